"""Shared route dependencies."""

from __future__ import annotations

from fastapi import Header, HTTPException


async def get_user_id(x_user_id: str | None = Header(default=None)) -> str:
    """Caller identity, set by the upstream gateway."""
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    return x_user_id.strip()
