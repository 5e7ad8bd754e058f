"""Billing issue tracking and detection."""
