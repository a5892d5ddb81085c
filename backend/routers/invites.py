# routers/invites.py — Pending organisation invitations
import os
from typing import Optional, List

from fastapi import APIRouter, Depends, HTTPException, BackgroundTasks
from pydantic import BaseModel, EmailStr
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from auth import require_min_role, CurrentUser, normalise_email
from database import get_db_session
from mailer import send_invitation
from models import Invite, Member, MemberRole, User, Board, Organisation

router = APIRouter(prefix="/api/v1/invites", tags=["Invites"])

APP_URL = os.getenv("APP_URL", "http://localhost:3000").rstrip("/")

require_admin = require_min_role(MemberRole.ADMIN, "Only admins can manage invites")


# --- Schemas ---

class InviteCreate(BaseModel):
    email: EmailStr
    role: MemberRole = MemberRole.MEMBER
    board_ids: List[str] = []


class InvitedBy(BaseModel):
    id: str
    name: str
    email: str


class InviteBoard(BaseModel):
    id: str
    name: str


class InviteOut(BaseModel):
    id: str
    email: str
    role: str
    invited_by: Optional[InvitedBy] = None
    boards: List[InviteBoard] = []
    created_at: str


def _invite_to_out(invite: Invite) -> InviteOut:
    inviter = invite.invited_by
    return InviteOut(
        id=invite.id,
        email=invite.email,
        role=invite.role.value if isinstance(invite.role, MemberRole) else invite.role,
        invited_by=InvitedBy(id=inviter.id, name=inviter.display_name, email=inviter.email) if inviter else None,
        boards=[InviteBoard(id=b.id, name=b.name) for b in invite.boards],
        created_at=invite.created_at.isoformat() if invite.created_at else "",
    )


def _invite_options():
    return (selectinload(Invite.invited_by), selectinload(Invite.boards))


# --- Endpoints ---

@router.get("", response_model=List[InviteOut])
async def list_invites(
    user: CurrentUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session),
):
    """List pending invites, newest first"""
    stmt = (
        select(Invite)
        .where(Invite.organisation_id == user.organisation_id)
        .options(*_invite_options())
        .order_by(Invite.created_at.desc())
    )
    result = await db.execute(stmt)
    return [_invite_to_out(i) for i in result.scalars().all()]


@router.post("", response_model=InviteOut, status_code=201)
async def create_invite(
    data: InviteCreate,
    background_tasks: BackgroundTasks,
    user: CurrentUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session),
):
    """Invite an email address into the organisation"""
    if data.role == MemberRole.OWNER:
        raise HTTPException(status_code=400, detail="Invites can grant ADMIN or MEMBER only")
    email = normalise_email(data.email)

    member_stmt = (
        select(Member.id)
        .join(User, User.id == Member.user_id)
        .where(Member.organisation_id == user.organisation_id, User.email == email)
    )
    if (await db.execute(member_stmt)).scalar_one_or_none():
        raise HTTPException(status_code=409, detail="This email is already a member of your organization")

    existing_stmt = select(Invite.id).where(
        Invite.organisation_id == user.organisation_id, Invite.email == email,
    )
    if (await db.execute(existing_stmt)).scalar_one_or_none():
        raise HTTPException(status_code=409, detail="An invite has already been sent to this email")

    boards = []
    board_ids = list(dict.fromkeys(data.board_ids))
    if board_ids:
        board_stmt = select(Board).where(Board.id.in_(board_ids), Board.organisation_id == user.organisation_id)
        boards = list((await db.execute(board_stmt)).scalars().all())
        if len(boards) != len(board_ids):
            raise HTTPException(status_code=400, detail="One or more boards were not found")

    invite = Invite(
        organisation_id=user.organisation_id,
        email=email,
        role=data.role,
        invited_by_id=user.id,
        boards=boards,
    )
    db.add(invite)
    await db.commit()

    stmt = select(Invite).where(Invite.id == invite.id).options(*_invite_options())
    invite = (await db.execute(stmt.execution_options(populate_existing=True))).scalar_one()

    org_name = (await db.execute(
        select(Organisation.name).where(Organisation.id == user.organisation_id)
    )).scalar_one()
    background_tasks.add_task(send_invitation, email, org_name, user.display_name, f"{APP_URL}/signup")

    return _invite_to_out(invite)


@router.delete("/{invite_id}")
async def delete_invite(
    invite_id: str,
    user: CurrentUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session),
):
    """Cancel a pending invite"""
    stmt = select(Invite).where(Invite.id == invite_id)
    invite = (await db.execute(stmt)).scalar_one_or_none()
    if not invite or invite.organisation_id != user.organisation_id:
        raise HTTPException(status_code=404, detail="Invite not found")

    await db.delete(invite)
    await db.commit()
    return {"status": "deleted"}
