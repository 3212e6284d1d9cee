# repogrowth/api/deps.py
from __future__ import annotations

import sqlite3
from collections.abc import Iterator

from fastapi import Depends, Header, HTTPException, Request, status
from fastapi.security import APIKeyHeader

from repogrowth.config import settings
from repogrowth.db import apply_schema, get_connection
from repogrowth.engine import GrowthEngine

# Example:  x-api-key: supersecret
api_key_header = APIKeyHeader(name="x-api-key", auto_error=False)


def _is_ip_allowed(client_ip: str | None) -> bool:
    """An empty API_ALLOWED_IPS allows every caller."""
    allowed = settings.API_ALLOWED_IPS
    if not allowed:
        return True
    if not client_ip:
        return False
    return client_ip in allowed


def require_api_key(
    request: Request,
    api_key: str | None = Depends(api_key_header),
) -> None:
    """
    Router-level guard.

      - API_KEY unset: no key check (local dev).
      - API_KEY set: x-api-key must match or 401.
      - API_ALLOWED_IPS non-empty: client IP must be listed or 403.
    """
    configured_key = settings.API_KEY
    if configured_key and api_key != configured_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API key",
        )

    client_ip = request.client.host if request.client else None
    if not _is_ip_allowed(client_ip):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="API access is not allowed from this IP address",
        )


def get_db() -> Iterator[sqlite3.Connection]:
    # Sync dependencies and endpoints may run on different threadpool threads.
    con = get_connection(check_same_thread=False)
    try:
        apply_schema(con)
        yield con
    finally:
        con.close()


def get_engine(con: sqlite3.Connection = Depends(get_db)) -> GrowthEngine:
    return GrowthEngine(con)


def get_actor(x_actor_id: str | None = Header(default=None)) -> str | None:
    """Identity of the caller as asserted by the fronting service."""
    return x_actor_id.strip() if x_actor_id and x_actor_id.strip() else None
