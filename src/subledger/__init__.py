"""
Subscription and billing lifecycle engine.

Tracks a customer's paid-plan state over time: plan changes with proration,
periodic renewal billing, billing issue detection and read-only analytics.
"""

__version__ = "1.0.0"
