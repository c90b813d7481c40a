"""Signature primitives, provider verifiers, and the HTTP transport."""
