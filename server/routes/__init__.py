"""
Routes Package for ReWear Exchange API

This package contains the modular route handlers for the exchange server.
"""

from . import user, items, swaps, rewards, admin
