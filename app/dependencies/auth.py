"""
Caller identity for FastAPI routes.

The frontend forwards the signed-in user as ``X-User-Id``; requests without
the header are anonymous.  Only used to stamp ``created_by`` on jobs.
"""
from __future__ import annotations

from typing import Optional

from fastapi import Header


async def get_optional_user_id(
    x_user_id: Optional[str] = Header(None, alias="X-User-Id"),
) -> Optional[str]:
    """Extract user ID if present, return None for anonymous callers."""
    return x_user_id or None
