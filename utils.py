"""
Provides common, stateless utility functions used across the application.
"""
import itertools
import json
import uuid
from typing import Any

_call_counter = itertools.count(1)


def new_call_id() -> str:
    """
    Returns a correlation id for a command channel request.

    The counter keeps ids ordered for log readers; the uuid suffix keeps them
    unique even if two channels exist in one process.
    """
    return f"call-{next(_call_counter)}-{uuid.uuid4().hex[:12]}"


def to_json(value: Any) -> str:
    """Compact JSON used in prompts and context summaries. Falls back to str() for odd values."""
    return json.dumps(value, ensure_ascii=False, default=str)
