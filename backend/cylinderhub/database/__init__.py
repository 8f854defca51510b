"""
Database package initialization.

The package follows a modular structure:
- base: declarative base and mixins
- connection: async engine and session management
- models: ORM models for parties, stock, orders, ledger entries and cylinders
"""

__all__ = []
