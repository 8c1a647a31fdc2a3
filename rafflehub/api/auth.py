from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException

from rafflehub.api.dependencies import extract_token, get_context, get_current_user
from rafflehub.api.schemas import (
    CredentialsRequest,
    ProfileResponse,
    ProfileUpdateRequest,
    TokenResponse,
)
from rafflehub.context import AppContext
from rafflehub.services.auth_service import CurrentUser, EmailTakenError, InvalidCredentialsError

router = APIRouter(tags=["auth"])


@router.post("/auth/signup", response_model=TokenResponse, status_code=201)
async def sign_up(request: CredentialsRequest, context: AppContext = Depends(get_context)):
    """Create an account and sign in"""
    try:
        token = await context.auth.sign_up(request.email, request.password)
    except EmailTakenError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except InvalidCredentialsError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return TokenResponse(token=token, user_id=context.auth.verify_token(token))


@router.post("/auth/login", response_model=TokenResponse)
async def login(request: CredentialsRequest, context: AppContext = Depends(get_context)):
    try:
        token = await context.auth.login(request.email, request.password)
    except InvalidCredentialsError as e:
        raise HTTPException(status_code=401, detail=str(e))

    return TokenResponse(token=token, user_id=context.auth.verify_token(token))


@router.post("/auth/logout", status_code=204)
async def logout(
    authorization: Optional[str] = Header(None),
    user: CurrentUser = Depends(get_current_user),
    context: AppContext = Depends(get_context),
):
    await context.auth.logout(extract_token(authorization))


@router.get("/profile", response_model=ProfileResponse)
async def get_profile(
    user: CurrentUser = Depends(get_current_user),
    context: AppContext = Depends(get_context),
):
    """Current user's profile, created with defaults on first visit"""
    profile = await context.auth.get_profile(user)
    return ProfileResponse(
        user_id=user.id,
        email=user.email,
        display_name=profile.display_name,
        bio=profile.bio,
    )


@router.put("/profile", response_model=ProfileResponse)
async def update_profile(
    request: ProfileUpdateRequest,
    user: CurrentUser = Depends(get_current_user),
    context: AppContext = Depends(get_context),
):
    profile = await context.auth.update_profile(user.id, request.display_name, request.bio)
    return ProfileResponse(
        user_id=user.id,
        email=user.email,
        display_name=profile.display_name,
        bio=profile.bio,
    )
