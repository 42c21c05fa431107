"""
Model mixins for SQLAlchemy models.
"""

from .timestamp_mixin import TimestampMixin
from .json_list_mixin import JSONListMixin

__all__ = ["TimestampMixin", "JSONListMixin"]
