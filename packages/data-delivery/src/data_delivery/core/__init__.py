"""Shared delivery primitives: errors, retry policy, records and metrics."""
