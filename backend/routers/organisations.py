# routers/organisations.py — Organisation settings and membership
from typing import Optional, List

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy import select, delete
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from auth import get_current_user, require_min_role, CurrentUser
from database import get_db_session
from models import Organisation, Member, MemberRole, Board, BoardMember

router = APIRouter(prefix="/api/v1/organisations", tags=["Organisations"])

require_admin = require_min_role(MemberRole.ADMIN, "Only admins can manage the organisation")


# --- Schemas ---

class MemberOut(BaseModel):
    id: str
    user_id: str
    name: str
    email: str
    avatar_url: Optional[str] = None
    role: str
    created_at: str


class OrgOut(BaseModel):
    id: str
    name: str
    slug: str
    members: List[MemberOut] = []
    current_user_role: Optional[str] = None
    created_at: str


class OrgUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    slug: Optional[str] = Field(default=None, min_length=1, max_length=50, pattern=r"^[a-z0-9-]+$")


class MemberRoleUpdate(BaseModel):
    role: MemberRole


# --- Helpers ---

def _member_to_out(m: Member) -> MemberOut:
    return MemberOut(
        id=m.id,
        user_id=m.user_id,
        name=m.user.display_name if m.user else "",
        email=m.user.email if m.user else "",
        avatar_url=m.user.avatar_url if m.user else None,
        role=m.role.value if isinstance(m.role, MemberRole) else m.role,
        created_at=m.created_at.isoformat() if m.created_at else "",
    )


async def _load_org(org_id: str, db: AsyncSession) -> Organisation:
    stmt = (
        select(Organisation)
        .where(Organisation.id == org_id)
        .options(selectinload(Organisation.members).selectinload(Member.user))
        .execution_options(populate_existing=True)
    )
    result = await db.execute(stmt)
    org = result.scalar_one_or_none()
    if not org:
        raise HTTPException(status_code=404, detail="Organisation not found")
    return org


def _org_to_out(org: Organisation, role: Optional[str] = None) -> OrgOut:
    return OrgOut(
        id=org.id,
        name=org.name,
        slug=org.slug,
        members=[_member_to_out(m) for m in org.members],
        current_user_role=role,
        created_at=org.created_at.isoformat() if org.created_at else "",
    )


async def _get_member(member_id: str, org_id: str, db: AsyncSession) -> Member:
    stmt = (
        select(Member)
        .where(Member.id == member_id, Member.organisation_id == org_id)
        .options(selectinload(Member.user))
    )
    result = await db.execute(stmt)
    member = result.scalar_one_or_none()
    if not member:
        raise HTTPException(status_code=404, detail="Member not found")
    return member


# --- Endpoints ---

@router.get("/current", response_model=OrgOut)
async def get_current_organisation(
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Get the caller's organisation with its members"""
    org = await _load_org(user.organisation_id, db)
    return _org_to_out(org, user.role)


@router.patch("/current", response_model=OrgOut)
async def update_current_organisation(
    data: OrgUpdate,
    user: CurrentUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session),
):
    """Rename the organisation or change its slug"""
    org = await _load_org(user.organisation_id, db)

    if data.slug is not None and data.slug != org.slug:
        taken = await db.execute(select(Organisation.id).where(Organisation.slug == data.slug))
        if taken.scalar_one_or_none():
            raise HTTPException(status_code=409, detail="Slug is already in use")
        org.slug = data.slug
    if data.name is not None:
        org.name = data.name

    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise HTTPException(status_code=409, detail="Slug is already in use")
    org = await _load_org(user.organisation_id, db)
    return _org_to_out(org, user.role)


@router.patch("/current/members/{member_id}", response_model=MemberOut)
async def update_member_role(
    member_id: str,
    data: MemberRoleUpdate,
    user: CurrentUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session),
):
    """Change a member's organisation role"""
    member = await _get_member(member_id, user.organisation_id, db)
    member.role = data.role
    await db.commit()
    return _member_to_out(member)


@router.delete("/current/members/{member_id}")
async def remove_member(
    member_id: str,
    user: CurrentUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session),
):
    """Remove a member and their board access"""
    member = await _get_member(member_id, user.organisation_id, db)
    if member.user_id == user.id:
        raise HTTPException(status_code=400, detail="You cannot remove yourself")

    org_boards = select(Board.id).where(Board.organisation_id == user.organisation_id)
    await db.execute(
        delete(BoardMember)
        .where(BoardMember.user_id == member.user_id, BoardMember.board_id.in_(org_boards))
        .execution_options(synchronize_session=False)
    )
    await db.delete(member)
    await db.commit()
    return {"status": "removed"}
