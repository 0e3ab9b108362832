"""Authentication dependencies for API user scoping."""

from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, HTTPException, Query
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.user import User
from services.session_token import decode_session_token


auth_scheme = HTTPBearer(auto_error=False)


@dataclass
class AuthContext:
    user_id: str
    email: Optional[str] = None


def ensure_user_scope(auth_user_id: str, supplied_user_id: Optional[str]) -> str:
    """Return authenticated user_id and reject cross-user attempts."""
    if supplied_user_id and supplied_user_id != auth_user_id:
        raise HTTPException(status_code=403, detail="user_id does not match authenticated session.")
    return auth_user_id


def _context_from_token(token: str) -> AuthContext:
    try:
        claims = decode_session_token(token)
    except ValueError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc
    return AuthContext(user_id=claims.user_id, email=claims.email)


async def get_auth_context(
    credentials: HTTPAuthorizationCredentials = Depends(auth_scheme),
) -> AuthContext:
    """Resolve authenticated user from Bearer session token."""
    if not credentials or credentials.scheme.lower() != "bearer":
        raise HTTPException(status_code=401, detail="Missing Bearer session token.")
    return _context_from_token(credentials.credentials)


async def get_stream_auth_context(
    credentials: HTTPAuthorizationCredentials = Depends(auth_scheme),
    token: Optional[str] = Query(default=None),
) -> AuthContext:
    """Like get_auth_context, but also accepts ``?token=``.

    Browsers cannot attach headers to an EventSource connection.
    """
    if credentials and credentials.scheme.lower() == "bearer":
        return _context_from_token(credentials.credentials)
    if token:
        return _context_from_token(token)
    raise HTTPException(status_code=401, detail="Missing Bearer session token.")


async def ensure_user_row(db: AsyncSession, auth: AuthContext) -> User:
    """Create the local owner row the first time an authenticated user shows up."""
    result = await db.execute(select(User).where(User.id == auth.user_id))
    user = result.scalar_one_or_none()
    if user:
        return user
    user = User(id=auth.user_id, email=auth.email or f"{auth.user_id}@local.invalid")
    db.add(user)
    await db.commit()
    return user
