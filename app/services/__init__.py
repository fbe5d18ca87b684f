"""Billing reconciliation service layer."""
