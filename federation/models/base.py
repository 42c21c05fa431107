"""
Base SQLAlchemy models with common fields and utilities.
"""

from sqlalchemy import Column, Integer
from sqlalchemy.ext.declarative import declared_attr

from federation.core.database import Base
from federation.models.mixins import TimestampMixin


class BaseModel(TimestampMixin, Base):
    """Base model with integer primary key and timestamps."""

    __abstract__ = True

    @declared_attr
    def id(cls):
        return Column(Integer, primary_key=True, index=True)

    def to_dict(self):
        """Convert model to dictionary."""
        return {c.name: getattr(self, c.name) for c in self.__table__.columns}
