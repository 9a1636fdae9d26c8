"""Stripe integration: outbound API client and inbound event parsing."""
