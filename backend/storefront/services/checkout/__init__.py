"""
Checkout service package initialization.

This module makes the checkout service directory a Python package, grouping
cart pricing, inventory counters and the checkout orchestration.
"""
