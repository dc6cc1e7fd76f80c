"""SQLAlchemy models."""

from subplans.models.base import Base, SoftDeleteMixin, TimestampMixin, UTCDateTime

__all__ = [
    "Base",
    "SoftDeleteMixin",
    "TimestampMixin",
    "UTCDateTime",
]
