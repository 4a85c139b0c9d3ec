"""
Ledgerline - Utilities Package
"""
