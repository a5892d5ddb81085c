# routers/users.py — User profile and member lookup
from typing import Optional, List

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field, field_validator
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from auth import get_current_user, get_accessible_board, CurrentUser
from database import get_db_session
from models import User, Member, MemberRole

router = APIRouter(prefix="/api/v1/users", tags=["Users"])


# --- Schemas ---

class UserOut(BaseModel):
    id: str
    email: str
    display_name: str
    avatar_url: Optional[str] = None
    role: Optional[str] = None
    created_at: str


class UserUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    avatar_url: Optional[str] = None

    @field_validator("avatar_url")
    @classmethod
    def validate_avatar_url(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not v.startswith(("http://", "https://")):
            raise ValueError("avatar_url must be an http(s) URL")
        return v


def _user_to_out(u: User, role=None) -> UserOut:
    return UserOut(
        id=u.id,
        email=u.email,
        display_name=u.display_name or "",
        avatar_url=u.avatar_url,
        role=role.value if isinstance(role, MemberRole) else role,
        created_at=u.created_at.isoformat() if u.created_at else "",
    )


# --- Endpoints ---

@router.get("/me", response_model=UserOut)
async def get_me(
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Get the caller's profile"""
    user_obj = (await db.execute(select(User).where(User.id == user.id))).scalar_one()
    return _user_to_out(user_obj, user.role)


@router.patch("/me", response_model=UserOut)
async def update_me(
    data: UserUpdate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Update display name or avatar"""
    user_obj = (await db.execute(select(User).where(User.id == user.id))).scalar_one_or_none()
    if not user_obj:
        raise HTTPException(status_code=404, detail="User not found")

    update_data = data.model_dump(exclude_unset=True)
    if "name" in update_data and update_data["name"] is not None:
        user_obj.display_name = update_data["name"]
    if "avatar_url" in update_data:
        user_obj.avatar_url = update_data["avatar_url"]

    await db.commit()
    return _user_to_out(user_obj, user.role)


@router.get("/by-board/{board_id}", response_model=List[UserOut])
async def list_users_for_board(
    board_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Members of the board's organisation, for assignee pickers"""
    board = await get_accessible_board(board_id, user, db)
    stmt = (
        select(User, Member.role)
        .join(Member, Member.user_id == User.id)
        .where(Member.organisation_id == board.organisation_id, User.is_active == True)
        .order_by(User.display_name.asc())
    )
    result = await db.execute(stmt)
    return [_user_to_out(u, role) for u, role in result.all()]
