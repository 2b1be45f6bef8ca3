"""SQLAlchemy 2.x declarative base for the sampling store tables."""
from __future__ import annotations

from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """Shared declarative base; ``Base.metadata.create_all`` builds the schema."""
