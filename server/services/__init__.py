"""
Services Package for ReWear Exchange API

Business logic that sits between the routes and the ledger store.
"""
