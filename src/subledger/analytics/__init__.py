"""Read-only subscription and revenue analytics."""
