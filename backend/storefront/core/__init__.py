"""
Core package for shared utilities.

Configuration, structured logging, authentication helpers and rate limiting
used across the backend application.
"""
