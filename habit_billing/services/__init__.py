"""Billing engine services."""
