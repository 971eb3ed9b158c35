"""
Identity and organization-membership dependencies.

Authentication and membership resolution live upstream (gateway / auth
service); they hand us the resolved ids in headers and these dependencies
only parse and enforce them.
"""
import uuid
from typing import FrozenSet, Optional

from fastapi import Depends, Header, HTTPException


def _as_uuid(value) -> uuid.UUID:
    if isinstance(value, uuid.UUID):
        return value
    return uuid.UUID(str(value))


def get_current_user_id(x_user_id: Optional[str] = Header(default=None)) -> uuid.UUID:
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Not authenticated")
    try:
        return _as_uuid(x_user_id.strip())
    except ValueError:
        raise HTTPException(status_code=401, detail="Invalid X-User-Id (must be UUID)")


def get_member_org_ids(
    x_org_id: Optional[str] = Header(default=None),
    user_id: uuid.UUID = Depends(get_current_user_id),
) -> FrozenSet[uuid.UUID]:
    """Organizations the current user belongs to (comma-separated header)."""
    if not x_org_id:
        return frozenset()
    try:
        return frozenset(_as_uuid(v.strip()) for v in x_org_id.split(",") if v.strip())
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid X-Org-Id (must be UUID)")


def ensure_member(organization_id: uuid.UUID, member_org_ids: FrozenSet[uuid.UUID]) -> None:
    if organization_id not in member_org_ids:
        raise HTTPException(status_code=403, detail="Not a member of this organization")
