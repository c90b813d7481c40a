"""Ingestion core: rate limiting, deduplication, dispatch, and notifications."""
