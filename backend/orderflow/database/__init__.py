"""
Database package initialization.

The package follows a modular structure:
- base: declarative base and column mixins
- connection: async engine and session management
- models: ORM models for orders, stock, payment proofs and audit records
"""

__all__ = []
