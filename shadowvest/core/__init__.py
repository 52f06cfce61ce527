"""
ShadowVest Core
Ledger records, claim state, and their binary layouts.
"""
