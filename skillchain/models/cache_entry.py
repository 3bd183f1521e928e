"""Cache Entry ORM: one row per namespaced key in the persisted client cache.

Invariants:
    - key is the primary key ("<namespace>:<name>")
    - value is an opaque JSON string; this layer never parses it
    - A write replaces the whole value (no partial updates)
"""

from datetime import datetime, timezone

from sqlalchemy import String, Text, DateTime
from sqlalchemy.orm import Mapped, mapped_column

from skillchain.db.base import Base


class CacheEntry(Base):
    """Key-value row backing LocalCacheSnapshot and the pending ledger."""
    __tablename__ = "cache_entries"

    key: Mapped[str] = mapped_column(String(255), primary_key=True)
    value: Mapped[str] = mapped_column(Text, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
