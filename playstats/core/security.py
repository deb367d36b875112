from __future__ import annotations

import hmac

from fastapi import Header, HTTPException, status

from playstats.core.settings import get_settings


def require_admin_key(
    admin_key: str | None = Header(default=None, alias="X-Admin-Key"),
) -> None:
    settings = get_settings()
    if admin_key is None or not hmac.compare_digest(
        admin_key.encode("utf-8"), settings.admin_key.encode("utf-8")
    ):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid admin key"
        )
