"""Storefront order, payment and inventory backend."""
