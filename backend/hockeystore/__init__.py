"""
Hockey Store checkout and M-Pesa payment reconciliation backend.
"""
__version__ = "0.1.0"
