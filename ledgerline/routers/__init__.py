"""
Ledgerline - API Routers Package
"""
