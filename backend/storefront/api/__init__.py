"""
API package initialization.
"""
