# auth.py — Magic-link authentication & organisation roles
# Features:
# - Passwordless sign-in through single-use emailed links
# - JWT access/refresh tokens with JTI for revocation
# - First-login provisioning (pending invite, or a fresh organisation)
# - 3-tier org roles (owner, admin, member) and board-level access

import os
import uuid
import hashlib
import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, Any

from jose import jwt, JWTError, ExpiredSignatureError
from fastapi import HTTPException, Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from pydantic import BaseModel, EmailStr, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from database import get_db_session
from models import (
    User, Organisation, Member, MemberRole, Invite, Board, BoardMember,
    MagicLinkToken, RevokedToken, utcnow,
)

logger = logging.getLogger("kanban-portal.auth")

# ============================================================
# CONFIGURATION
# ============================================================

SECRET_KEY = os.getenv("JWT_SECRET_KEY", "")
if not SECRET_KEY or SECRET_KEY == "change-this-to-a-secure-random-key-in-production":
    SECRET_KEY = secrets.token_urlsafe(64)
    logger.warning(
        "⚠️  JWT_SECRET_KEY not set or insecure. Generated ephemeral key. "
        "Set JWT_SECRET_KEY in production!"
    )

ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "60"))
REFRESH_TOKEN_EXPIRE_DAYS = int(os.getenv("REFRESH_TOKEN_EXPIRE_DAYS", "14"))
MAGIC_LINK_EXPIRE_MINUTES = int(os.getenv("MAGIC_LINK_EXPIRE_MINUTES", "15"))
OPEN_SIGNUP = os.getenv("OPEN_SIGNUP", "false").lower() == "true"
DEFAULT_NEXT_PATH = "/boards"
DEFAULT_ORG_NAME = "My Organization"

security = HTTPBearer()


# ============================================================
# ROLE HIERARCHY
# ============================================================

ROLE_HIERARCHY = {
    MemberRole.OWNER: 3,
    MemberRole.ADMIN: 2,
    MemberRole.MEMBER: 1,
}

ADMIN_ROLES = {MemberRole.OWNER.value, MemberRole.ADMIN.value}


# ============================================================
# PYDANTIC SCHEMAS
# ============================================================

class EmailCheck(BaseModel):
    email: str = ""


class MagicLinkRequest(BaseModel):
    email: EmailStr
    name: Optional[str] = Field(default=None, max_length=100)
    next: Optional[str] = None


class MagicLinkVerify(BaseModel):
    token: str = Field(..., min_length=1)


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int
    user: Dict[str, Any]


class CurrentUser(BaseModel):
    id: str
    email: str
    display_name: str
    avatar_url: Optional[str] = None
    organisation_id: str
    member_id: str
    role: str
    is_active: bool
    jti: Optional[str] = None
    token_expires_at: Optional[datetime] = None

    @property
    def is_admin(self) -> bool:
        return self.role in ADMIN_ROLES


class RefreshRequest(BaseModel):
    refresh_token: str


def normalise_email(email: str) -> str:
    return (email or "").strip().lower()


def safe_next_path(next_path: Optional[str]) -> str:
    """Only same-site relative paths are followed after sign-in."""
    if not next_path or not next_path.startswith("/") or next_path.startswith("//"):
        return DEFAULT_NEXT_PATH
    return next_path


# ============================================================
# AUTH SERVICE
# ============================================================

class AuthService:
    """Magic-link sign-in, token issuing and first-login provisioning"""

    @staticmethod
    def hash_token(raw_token: str) -> str:
        return hashlib.sha256(raw_token.encode("utf-8")).hexdigest()

    @staticmethod
    def _create_token(data: Dict[str, Any], token_type: str, expires_delta: timedelta) -> str:
        to_encode = data.copy()
        now = datetime.now(timezone.utc)
        to_encode.update({
            "exp": now + expires_delta,
            "iat": now,
            "type": token_type,
            "jti": str(uuid.uuid4()),
        })
        return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)

    @staticmethod
    def create_access_token(data: Dict[str, Any], expires_delta: Optional[timedelta] = None) -> str:
        delta = expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)
        return AuthService._create_token(data, "access", delta)

    @staticmethod
    def create_refresh_token(data: Dict[str, Any]) -> str:
        return AuthService._create_token(data, "refresh", timedelta(days=REFRESH_TOKEN_EXPIRE_DAYS))

    @staticmethod
    def verify_token(token: str) -> Dict[str, Any]:
        try:
            payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
            return payload
        except ExpiredSignatureError:
            raise HTTPException(status_code=401, detail="Token expired")
        except JWTError:
            raise HTTPException(status_code=401, detail="Invalid token")

    @staticmethod
    def token_data(user: User, member: Member) -> Dict[str, Any]:
        return {
            "sub": user.id,
            "email": user.email,
            "organisation_id": member.organisation_id,
            "role": member.role.value if isinstance(member.role, MemberRole) else member.role,
        }

    @staticmethod
    async def email_is_allowed(email: str, db: AsyncSession) -> bool:
        """An email may sign in when it belongs to a user or has a pending invite"""
        user_stmt = select(User.id).where(User.email == email)
        if (await db.execute(user_stmt)).scalar_one_or_none():
            return True
        invite_stmt = select(Invite.id).where(Invite.email == email).limit(1)
        return (await db.execute(invite_stmt)).scalar_one_or_none() is not None

    @staticmethod
    async def create_magic_link(
        email: str, db: AsyncSession, display_name: Optional[str] = None, next_path: Optional[str] = None,
    ) -> str:
        """Persist a hashed single-use token and return the raw value for the email"""
        raw_token = secrets.token_urlsafe(32)
        link = MagicLinkToken(
            token_hash=AuthService.hash_token(raw_token),
            email=email,
            display_name=display_name,
            next_path=safe_next_path(next_path),
            expires_at=utcnow() + timedelta(minutes=MAGIC_LINK_EXPIRE_MINUTES),
        )
        db.add(link)
        await db.commit()
        return raw_token

    @staticmethod
    async def consume_magic_link(raw_token: str, db: AsyncSession) -> MagicLinkToken:
        stmt = select(MagicLinkToken).where(
            MagicLinkToken.token_hash == AuthService.hash_token(raw_token),
            MagicLinkToken.used_at.is_(None),
            MagicLinkToken.expires_at > utcnow(),
        )
        result = await db.execute(stmt)
        link = result.scalar_one_or_none()
        if not link:
            raise HTTPException(status_code=401, detail="Invalid or expired link")
        link.used_at = utcnow()
        await db.flush()
        return link

    @staticmethod
    async def provision_user(email: str, display_name: Optional[str], db: AsyncSession) -> User:
        """Return the user for this email, creating user and membership on first login.

        A pending invite places the user in the inviting organisation with the
        invited role and board access, and is then consumed. Without an invite
        the user becomes OWNER of a new organisation. A user who was removed
        from their organisation goes through the same membership step again.
        """
        stmt = select(User).where(User.email == email).options(selectinload(User.membership))
        result = await db.execute(stmt)
        user = result.scalar_one_or_none()
        if user and user.membership:
            user.last_login_at = utcnow()
            await db.commit()
            return user

        if not user:
            name = (display_name or "").strip() or email.split("@")[0]
            user = User(email=email, display_name=name, is_active=True)
            db.add(user)
            await db.flush()
        user.last_login_at = utcnow()

        invite_stmt = (
            select(Invite)
            .where(Invite.email == email)
            .options(selectinload(Invite.boards))
            .order_by(Invite.created_at.asc())
            .limit(1)
        )
        invite = (await db.execute(invite_stmt)).scalar_one_or_none()

        if invite:
            member = Member(organisation_id=invite.organisation_id, user_id=user.id, role=invite.role)
            db.add(member)
            for board in invite.boards:
                db.add(BoardMember(board_id=board.id, user_id=user.id))
            await db.delete(invite)
            logger.info(f"Provisioned invited user {user.id[:8]} into org {invite.organisation_id[:8]}")
        else:
            org = Organisation(name=DEFAULT_ORG_NAME, slug=f"org-{user.id[:8]}")
            db.add(org)
            await db.flush()
            member = Member(organisation_id=org.id, user_id=user.id, role=MemberRole.OWNER)
            db.add(member)
            logger.info(f"Provisioned user {user.id[:8]} as owner of new org {org.id[:8]}")

        await db.commit()

        stmt = select(User).where(User.id == user.id).options(selectinload(User.membership))
        result = await db.execute(stmt.execution_options(populate_existing=True))
        return result.scalar_one()

    @staticmethod
    async def is_token_revoked(jti: str, db: AsyncSession) -> bool:
        stmt = select(RevokedToken).where(RevokedToken.jti == jti)
        result = await db.execute(stmt)
        return result.scalar_one_or_none() is not None

    @staticmethod
    async def revoke_token(jti: str, user_id: str, expires_at: Optional[datetime], db: AsyncSession) -> None:
        if await AuthService.is_token_revoked(jti, db):
            return
        revoked = RevokedToken(jti=jti, user_id=user_id, expires_at=expires_at)
        db.add(revoked)
        await db.commit()


# ============================================================
# FASTAPI DEPENDENCIES
# ============================================================

async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    db: AsyncSession = Depends(get_db_session),
) -> CurrentUser:
    payload = AuthService.verify_token(credentials.credentials)

    if payload.get("type") != "access":
        raise HTTPException(status_code=401, detail="Invalid token type")

    # Check revocation
    jti = payload.get("jti")
    if jti and await AuthService.is_token_revoked(jti, db):
        raise HTTPException(status_code=401, detail="Token has been revoked")

    user_id = payload.get("sub")
    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid token")

    stmt = select(User).where(User.id == user_id).options(selectinload(User.membership))
    result = await db.execute(stmt)
    user = result.scalar_one_or_none()

    if not user or not user.is_active:
        raise HTTPException(status_code=401, detail="User not found or inactive")

    member = user.membership
    if not member:
        raise HTTPException(status_code=403, detail="You are not a member of any organisation")

    exp = payload.get("exp")
    return CurrentUser(
        id=user.id,
        email=user.email,
        display_name=user.display_name or "",
        avatar_url=user.avatar_url,
        organisation_id=member.organisation_id,
        member_id=member.id,
        role=member.role.value if isinstance(member.role, MemberRole) else member.role,
        is_active=user.is_active,
        jti=jti,
        token_expires_at=datetime.fromtimestamp(exp, tz=timezone.utc) if exp else None,
    )


def require_min_role(min_role: MemberRole, detail: str = "Insufficient role level"):
    """Dependency factory: require org role level >= min_role"""
    async def _check(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
        user_level = ROLE_HIERARCHY.get(MemberRole(user.role), 0)
        required_level = ROLE_HIERARCHY.get(min_role, 0)
        if user_level < required_level:
            raise HTTPException(status_code=403, detail=detail)
        return user
    return _check


# ============================================================
# BOARD ACCESS
# ============================================================

async def has_board_membership(board_id: str, user_id: str, db: AsyncSession) -> bool:
    stmt = select(BoardMember.id).where(BoardMember.board_id == board_id, BoardMember.user_id == user_id)
    return (await db.execute(stmt)).scalar_one_or_none() is not None


async def get_accessible_board(board_id: str, user: CurrentUser, db: AsyncSession) -> Board:
    """Load a board in the caller's organisation.

    Owners and admins reach every board; members only the boards they were added to.
    """
    stmt = select(Board).where(Board.id == board_id, Board.organisation_id == user.organisation_id)
    result = await db.execute(stmt)
    board = result.scalar_one_or_none()
    if not board:
        raise HTTPException(status_code=404, detail="Board not found")
    if not user.is_admin and not await has_board_membership(board_id, user.id, db):
        raise HTTPException(status_code=403, detail="You do not have access to this board")
    return board
