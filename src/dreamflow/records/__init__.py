"""Durable dream records, blob storage, and idempotent intake."""
