# routers/auth.py — Magic-link sign-in endpoints with token revocation
import os
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, HTTPException, BackgroundTasks, Query
from fastapi.responses import JSONResponse, RedirectResponse
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from auth import (
    AuthService, EmailCheck, MagicLinkRequest, MagicLinkVerify, TokenResponse, RefreshRequest,
    ACCESS_TOKEN_EXPIRE_MINUTES, OPEN_SIGNUP, get_current_user, CurrentUser,
    normalise_email, safe_next_path,
)
from database import get_db_session
from mailer import send_magic_link
from models import User, Member, MemberRole

router = APIRouter(prefix="/api/v1/auth", tags=["Authentication"])

APP_URL = os.getenv("APP_URL", "http://localhost:3000").rstrip("/")


def _build_token_response(user_obj: User, member: Member) -> TokenResponse:
    """Build token response from a user and their membership"""
    token_data = AuthService.token_data(user_obj, member)
    access_token = AuthService.create_access_token(token_data)
    refresh_token = AuthService.create_refresh_token(token_data)

    return TokenResponse(
        access_token=access_token,
        refresh_token=refresh_token,
        expires_in=ACCESS_TOKEN_EXPIRE_MINUTES * 60,
        user={
            "id": user_obj.id,
            "email": user_obj.email,
            "display_name": user_obj.display_name or "",
            "avatar_url": user_obj.avatar_url,
            "organisation_id": member.organisation_id,
            "role": member.role.value if isinstance(member.role, MemberRole) else member.role,
        },
    )


async def _sign_in_with_link(raw_token: str, db: AsyncSession):
    link = await AuthService.consume_magic_link(raw_token, db)
    user = await AuthService.provision_user(link.email, link.display_name, db)
    return _build_token_response(user, user.membership), link.next_path


@router.post("/check-email")
async def check_email(
    data: EmailCheck,
    db: AsyncSession = Depends(get_db_session),
):
    """Whether an email may request a sign-in link"""
    email = normalise_email(data.email)
    if not email:
        return JSONResponse(status_code=400, content={"allowed": False})
    return {"allowed": await AuthService.email_is_allowed(email, db)}


@router.post("/magic-link", status_code=202)
async def request_magic_link(
    data: MagicLinkRequest,
    background_tasks: BackgroundTasks,
    db: AsyncSession = Depends(get_db_session),
):
    """Email a single-use sign-in link"""
    email = normalise_email(data.email)
    if not OPEN_SIGNUP and not await AuthService.email_is_allowed(email, db):
        raise HTTPException(
            status_code=403,
            detail="This email doesn't have access. Contact your administrator to request an invite.",
        )

    raw_token = await AuthService.create_magic_link(email, db, display_name=data.name, next_path=data.next)
    query = urlencode({"token": raw_token, "next": safe_next_path(data.next)})
    background_tasks.add_task(send_magic_link, email, f"{APP_URL}/auth/callback?{query}")
    return {"status": "sent"}


@router.post("/verify", response_model=TokenResponse)
async def verify_magic_link(
    data: MagicLinkVerify,
    db: AsyncSession = Depends(get_db_session),
):
    """Exchange a sign-in link token for access and refresh tokens"""
    response, _ = await _sign_in_with_link(data.token, db)
    return response


@router.get("/callback")
async def magic_link_callback(
    token: str = Query(default=""),
    next: str = Query(default="/boards"),
    db: AsyncSession = Depends(get_db_session),
):
    """Browser landing point for emailed links"""
    if not token:
        return RedirectResponse(f"{APP_URL}/login?error=auth_failed")
    try:
        tokens, stored_next = await _sign_in_with_link(token, db)
    except HTTPException:
        return RedirectResponse(f"{APP_URL}/login?error=auth_failed")

    target = safe_next_path(next if next != "/boards" else stored_next)
    fragment = urlencode({"access_token": tokens.access_token, "refresh_token": tokens.refresh_token})
    return RedirectResponse(f"{APP_URL}{target}#{fragment}")


@router.post("/refresh", response_model=TokenResponse)
async def refresh_token(
    refresh_req: RefreshRequest,
    db: AsyncSession = Depends(get_db_session),
):
    """Refresh access token using a refresh token"""
    payload = AuthService.verify_token(refresh_req.refresh_token)

    if payload.get("type") != "refresh":
        raise HTTPException(status_code=401, detail="Invalid token type. Expected refresh token.")

    # Check if revoked
    jti = payload.get("jti")
    if jti and await AuthService.is_token_revoked(jti, db):
        raise HTTPException(status_code=401, detail="Refresh token has been revoked")

    from sqlalchemy.orm import selectinload

    stmt = select(User).where(User.id == payload.get("sub")).options(selectinload(User.membership))
    result = await db.execute(stmt)
    user = result.scalar_one_or_none()

    if not user or not user.is_active or not user.membership:
        raise HTTPException(status_code=401, detail="User not found or inactive")

    return _build_token_response(user, user.membership)


@router.post("/logout")
async def logout(
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Logout and revoke the presented access token"""
    if user.jti:
        await AuthService.revoke_token(user.jti, user.id, user.token_expires_at, db)
    return {"status": "logged_out", "message": "Session terminated"}


@router.get("/me")
async def get_current_user_info(user: CurrentUser = Depends(get_current_user)):
    """Get current authenticated user information"""
    return {
        "id": user.id,
        "email": user.email,
        "display_name": user.display_name,
        "avatar_url": user.avatar_url,
        "organisation_id": user.organisation_id,
        "role": user.role,
        "is_active": user.is_active,
    }
