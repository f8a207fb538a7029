"""
Billing, entitlement and reconciliation services.
"""
