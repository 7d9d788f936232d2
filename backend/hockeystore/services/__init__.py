"""
Checkout, reconciliation and inventory services.
"""
