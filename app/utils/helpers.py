"""
Common utility functions and helpers.
"""
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List
import re
import secrets


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def new_id(prefix: str) -> str:
    """
    Generate an opaque identifier such as ``tmj_1718000000000_3f9a1c2b``.

    Args:
        prefix: Short kind marker

    Returns:
        Identifier with millisecond timestamp and random suffix
    """
    millis = int(utcnow().timestamp() * 1000)
    return f"{prefix}_{millis}_{secrets.token_hex(4)}"


def text_overlaps(a: str, b: str) -> bool:
    """Case-insensitive substring match in either direction."""
    a_l, b_l = a.lower(), b.lower()
    return a_l in b_l or b_l in a_l


def overlapping(needles: Iterable[str], haystack: Iterable[str]) -> List[str]:
    """
    Return the items of *needles* that overlap any item of *haystack*.

    Args:
        needles: Terms to look for (order is preserved)
        haystack: Terms to look in

    Returns:
        Matching needles
    """
    pool = [h for h in haystack if h]
    return [n for n in needles if n and any(text_overlaps(n, h) for h in pool)]


def as_str_list(value: Any) -> List[str]:
    """Coerce a loosely-typed metadata value into a list of strings."""
    if value is None:
        return []
    if isinstance(value, str):
        return [value] if value.strip() else []
    if isinstance(value, (list, tuple, set)):
        return [str(v) for v in value if v is not None and str(v).strip()]
    return [str(value)]


def camel_to_snake(name: str) -> str:
    """Convert ``requiredDataTypes`` to ``required_data_types``."""
    name = re.sub(r"(.)([A-Z][a-z]+)", r"\1_\2", name)
    return re.sub(r"([a-z0-9])([A-Z])", r"\1_\2", name).lower()


def snake_keys(data: Dict[str, Any]) -> Dict[str, Any]:
    """Shallow copy of *data* with camelCase keys converted to snake_case."""
    return {camel_to_snake(k): v for k, v in data.items()}


def truncate_text(text: str, max_length: int = 200, suffix: str = "...") -> str:
    """
    Truncate text to maximum length.

    Args:
        text: Text to truncate
        max_length: Maximum length
        suffix: Suffix to add if truncated

    Returns:
        Truncated text
    """
    if len(text) <= max_length:
        return text
    return text[:max_length - len(suffix)] + suffix
