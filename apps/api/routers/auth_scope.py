"""Bearer session dependency for account-scoped billing endpoints."""

from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from services.session_token import SessionClaims, decode_session_token


auth_scheme = HTTPBearer(auto_error=False)

# Routers only need the account id and email carried by the session.
AuthContext = SessionClaims


async def get_auth_context(
    credentials: HTTPAuthorizationCredentials = Depends(auth_scheme),
) -> AuthContext:
    if credentials is None:
        raise HTTPException(
            status_code=401,
            detail="Missing Bearer session token.",
            headers={"WWW-Authenticate": "Bearer"},
        )
    try:
        return decode_session_token(credentials.credentials)
    except ValueError as exc:
        raise HTTPException(
            status_code=401,
            detail=str(exc),
            headers={"WWW-Authenticate": "Bearer"},
        ) from exc
