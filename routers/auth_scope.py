"""Authentication dependencies resolving the acting staff member."""

from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from services.session_token import decode_session_token


auth_scheme = HTTPBearer(auto_error=False)


@dataclass
class AuthContext:
    staff_id: str
    email: Optional[str] = None
    branch_id: Optional[str] = None


def ensure_staff_scope(auth_staff_id: str, supplied_staff_id: Optional[str]) -> str:
    """Return the authenticated staff id and reject acting on behalf of someone else."""
    if supplied_staff_id and supplied_staff_id != auth_staff_id:
        raise HTTPException(status_code=403, detail="Staff id does not match authenticated session.")
    return auth_staff_id


def ensure_branch_scope(auth: AuthContext, branch_id: Optional[str]) -> Optional[str]:
    """Staff bound to a branch may only read that branch's queue."""
    if auth.branch_id and branch_id and branch_id != auth.branch_id:
        raise HTTPException(status_code=403, detail="branch_id does not match authenticated session.")
    return branch_id or auth.branch_id


async def get_auth_context(
    credentials: HTTPAuthorizationCredentials = Depends(auth_scheme),
) -> AuthContext:
    """Resolve the staff member from a Bearer session token."""
    if not credentials or credentials.scheme.lower() != "bearer":
        raise HTTPException(status_code=401, detail="Missing Bearer session token.")

    try:
        payload = decode_session_token(credentials.credentials)
    except ValueError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc

    return AuthContext(
        staff_id=str(payload.get("sub", "")),
        email=str(payload.get("email", "")) or None,
        branch_id=str(payload.get("branch_id", "")) or None,
    )
