"""
Role checks for document routes.

    viewer < member < admin < owner

    @router.post("/{document_id}/stages/{stage}/retry")
    async def retry(user: TokenPayload = Depends(require_role("admin"))): ...

A role below the minimum gets 403 with the FORBIDDEN error body.
"""

from __future__ import annotations

import logging
from typing import Annotated

from fastapi import Depends, HTTPException, status

from app.auth.token import TokenPayload, get_current_user
from app.schemas.documents import UploadErrors

logger = logging.getLogger(__name__)

_ROLE_RANK: dict[str, int] = {"viewer": 0, "member": 1, "admin": 2, "owner": 3}


def has_role(user_role: str, minimum_role: str) -> bool:
    return _ROLE_RANK.get(user_role, -1) >= _ROLE_RANK.get(minimum_role, len(_ROLE_RANK))


def require_role(minimum_role: str):
    """Dependency factory: verified user whose role is at least `minimum_role`."""
    if minimum_role not in _ROLE_RANK:
        raise ValueError(f"Unknown role: {minimum_role}")

    async def _dependency(
        user: Annotated[TokenPayload, Depends(get_current_user)],
    ) -> TokenPayload:
        if not has_role(user.role, minimum_role):
            logger.info(
                "Access denied | org=%s user=%s role=%s required=%s",
                user.organization_id, user.sub, user.role, minimum_role,
            )
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=UploadErrors.forbidden(minimum_role).model_dump(mode="json"),
            )
        return user

    return _dependency


RequireViewer = Depends(require_role("viewer"))
RequireMember = Depends(require_role("member"))
RequireAdmin  = Depends(require_role("admin"))
