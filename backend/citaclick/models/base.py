"""
Base mixins for database models.

Provides common functionality:
- TimestampMixin: created_at, updated_at timestamps
- TenantScopedMixin: tenant_id for multi-tenant isolation
- generate_uuid: UUID generation for primary keys
- UTCDateTime: timezone-aware datetime type that round-trips through SQLite
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, String, DateTime, func, TypeDecorator
from sqlalchemy.orm import declared_attr

from citaclick.db_base import Base  # noqa: F401 - re-exported for models


class UTCDateTime(TypeDecorator):
    """
    Platform-independent aware datetime type.

    PostgreSQL keeps the offset; SQLite drops it. Values are normalised to
    UTC on the way in and always come back as aware UTC datetimes, so
    lifecycle date arithmetic never mixes naive and aware values.
    """
    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value, dialect):
        if value is None:
            return value
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


def generate_uuid() -> str:
    """Generate a UUID4 string for use as a primary key default."""
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TimestampMixin:
    """Mixin that adds created_at and updated_at timestamp columns."""

    created_at = Column(
        UTCDateTime(),
        nullable=False,
        default=utcnow,
        server_default=func.now(),
        comment="Timestamp when record was created"
    )

    updated_at = Column(
        UTCDateTime(),
        nullable=False,
        default=utcnow,
        server_default=func.now(),
        onupdate=utcnow,
        comment="Timestamp when record was last updated"
    )


class TenantScopedMixin:
    """
    Mixin that adds tenant_id column for multi-tenant isolation.

    SECURITY: tenant_id is ONLY extracted from the JWT (negocio_id claim).
    NEVER accept tenant_id from client input (body/query/path).
    """

    @declared_attr
    def tenant_id(cls):
        return Column(
            String(36),
            nullable=False,
            index=True,
            comment="Negocio identifier from JWT. NEVER from client input."
        )
