"""Scheduled renewal billing."""
