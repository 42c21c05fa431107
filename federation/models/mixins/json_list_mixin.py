"""
Helpers for list-valued columns stored as JSON text.
"""

import json


class JSONListMixin:
    """Read and write JSON-encoded string lists stored in Text columns."""

    @staticmethod
    def _load_list(raw):
        try:
            value = json.loads(raw) if raw else []
        except (json.JSONDecodeError, TypeError):
            return []
        return value if isinstance(value, list) else []

    @staticmethod
    def _dump_list(values):
        return json.dumps(list(values)) if values else "[]"
