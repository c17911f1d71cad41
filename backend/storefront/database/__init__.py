"""
Database package initialization.

Submodules:
- base: declarative base and shared mixins
- connection: async engine, session factory and FastAPI dependency
- models: ORM models for catalog, coupons, carts and orders
"""

__all__ = []
