# app/security.py
"""Security dependencies for API key validation and scope enforcement."""
from __future__ import annotations

from typing import Callable, Set

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.orm import Session

from app.config import DEV_API_KEY_ALLOWED, ENV
from app.db import get_db
from app.models.api_key import ApiKey, ApiScope
from app.utils.apikey import find_valid_key
from app.utils.audit import log_audit
from app.utils.errors import error_response
from app.utils.time import utcnow


def _extract_key(
    authorization: str | None = Header(default=None),
    x_api_key: str | None = Header(default=None, alias="X-API-Key"),
) -> str | None:
    """Récupère la clé depuis Authorization: Bearer ... ou X-API-Key."""
    if x_api_key:
        return x_api_key.strip()
    if authorization and authorization.startswith("Bearer "):
        return authorization.split(" ", 1)[1].strip()
    return None


def _legacy_key(db: Session) -> ApiKey:
    if not DEV_API_KEY_ALLOWED:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=error_response("LEGACY_KEY_FORBIDDEN", "Legacy dev key disabled."),
        )
    now = utcnow()
    log_audit(
        db,
        actor="legacy-apikey",
        action="LEGACY_API_KEY_USED",
        entity="ApiKey",
        entity_id=0,
        data={"env": ENV},
    )
    db.commit()
    return ApiKey(
        id=0,
        name="__legacy__",
        prefix="legacy",
        key_hash="legacy",
        scope=ApiScope.admin,
        is_active=True,
        created_at=now,
        expires_at=None,
        last_used_at=now,
    )


def require_api_key(
    db: Session = Depends(get_db),
    token: str | None = Depends(_extract_key),
) -> ApiKey:
    """Validate API key tokens and return the corresponding row."""
    if not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=error_response("NO_API_KEY", "API key required."),
        )

    key = find_valid_key(db, token)
    if key == "legacy":
        return _legacy_key(db)

    if not isinstance(key, ApiKey) or not key.is_active:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=error_response("UNAUTHORIZED", "Invalid or expired API key"),
        )

    # Book-keeping : last_used_at + audit
    key.last_used_at = utcnow()
    log_audit(
        db,
        actor=f"apikey:{key.id}",
        action="API_KEY_USED",
        entity="ApiKey",
        entity_id=key.id,
        data={"scope": key.scope.value, "prefix": key.prefix},
    )
    db.commit()
    return key


def require_scope(allowed: Set[ApiScope]) -> Callable:
    """Enforce qu'une clé possède l'un des scopes autorisés."""

    if not allowed:
        raise RuntimeError("require_scope needs a non-empty set of ApiScope")

    def _dep(key: ApiKey = Depends(require_api_key)) -> ApiKey:
        if key.id == 0:
            return key
        if key.scope == ApiScope.admin or key.scope in allowed:
            return key
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=error_response(
                "INSUFFICIENT_SCOPE",
                f"Requires one of: {[scope.value for scope in allowed]}",
            ),
        )

    return _dep


__all__ = ["require_api_key", "require_scope"]
