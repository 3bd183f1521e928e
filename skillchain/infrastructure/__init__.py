"""Infrastructure Layer: external service clients and cross-cutting concerns.

Invariants:
    - All external calls wrapped with timeout and error mapping
    - Failures surface as MarketplaceError subclasses (core/errors.py)
"""
