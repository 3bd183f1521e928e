"""ORM Models: SQLAlchemy declarative models for persisted client state.

Invariants:
    - All models inherit from Base (db/base.py)

Design Decisions:
    - All models imported here so Base.metadata is complete before create_all runs
"""

from skillchain.models.cache_entry import CacheEntry  # noqa: F401
