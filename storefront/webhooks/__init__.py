"""Webhook inbound system.

Receives Stripe webhooks, verifies the signature over the raw body,
dispatches checkout completions to order reconciliation.
"""
