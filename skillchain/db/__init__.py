"""Database Infrastructure: SQLAlchemy Base for the persisted cache.

Invariants:
    - All sessions are async (AsyncSession)
"""
