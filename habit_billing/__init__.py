"""
Subscription lifecycle and entitlement engine.

Ingests billing-provider webhooks, advances the per-user subscription state
machine, reconciles expired grace periods and serves cached feature
entitlements.
"""

__version__ = "0.1.0"
