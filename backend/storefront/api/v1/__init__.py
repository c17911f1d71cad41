"""
API v1 package initialization.

This module initializes the v1 API package for the storefront.
"""
