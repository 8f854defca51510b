"""Inventory ledger service package."""
