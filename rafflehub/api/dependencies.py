from typing import Optional

from fastapi import Depends, Header, HTTPException, Request

from rafflehub.context import AppContext
from rafflehub.services.auth_service import CurrentUser


def get_context(request: Request) -> AppContext:
    return request.app.state.context


def extract_token(authorization: Optional[str]) -> Optional[str]:
    """
    Pull the session token out of an Authorization header
    Header format: "Bearer <token>"
    """
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        return None
    return token.strip()


async def get_optional_user(
    authorization: Optional[str] = Header(None),
    context: AppContext = Depends(get_context),
) -> Optional[CurrentUser]:
    return await context.auth.current_user(extract_token(authorization))


async def get_current_user(
    authorization: Optional[str] = Header(None),
    context: AppContext = Depends(get_context),
) -> CurrentUser:
    """Authenticated user, 401 otherwise"""
    token = extract_token(authorization)
    if token is None:
        raise HTTPException(
            status_code=401,
            detail="Invalid authorization header format"
        )

    user = await context.auth.current_user(token)
    if user is None:
        raise HTTPException(
            status_code=401,
            detail="Invalid or expired session"
        )

    return user
