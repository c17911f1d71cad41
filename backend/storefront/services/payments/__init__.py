"""Stripe integration and payment reconciliation."""
