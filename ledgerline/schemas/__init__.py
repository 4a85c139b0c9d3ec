"""
Ledgerline - Pydantic Schemas Package
"""
