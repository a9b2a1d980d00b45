"""
Inngest Functions Registry.

This module exports all Inngest functions for registration with the serve endpoint.
"""

from .affiliate import accrue_commission_fn

# All functions to register with Inngest
all_functions = [
    accrue_commission_fn,
]

__all__ = [
    "all_functions",
    "accrue_commission_fn",
]
