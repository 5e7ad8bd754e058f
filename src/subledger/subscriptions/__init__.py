"""Subscription aggregate, state machine, proration and the ledger service."""
