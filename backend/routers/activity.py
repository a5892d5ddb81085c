# routers/activity.py — Board activity feed
from typing import Optional, List

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from sqlalchemy import select, and_, or_
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from auth import get_current_user, get_accessible_board, CurrentUser
from database import get_db_session
from models import Activity
from routers.kanban import UserBrief, user_brief, ts

router = APIRouter(prefix="/api/v1/boards", tags=["Activity"])


class ActivityOut(BaseModel):
    id: str
    board_id: str
    action: str
    entity_type: str
    entity_id: str
    metadata: Optional[dict] = None
    user: Optional[UserBrief] = None
    created_at: str


class ActivityPage(BaseModel):
    items: List[ActivityOut]
    next_cursor: Optional[str] = None


@router.get("/{board_id}/activity", response_model=ActivityPage)
async def list_activity(
    board_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
    limit: int = Query(default=20, ge=1, le=50),
    cursor: Optional[str] = Query(default=None),
):
    """Newest-first activity. `next_cursor` is the id of the first entry on the next page."""
    await get_accessible_board(board_id, user, db)

    stmt = (
        select(Activity)
        .where(Activity.board_id == board_id)
        .options(selectinload(Activity.user))
        .order_by(Activity.created_at.desc(), Activity.id.desc())
        .limit(limit + 1)
    )
    if cursor:
        anchor = (await db.execute(
            select(Activity).where(Activity.id == cursor, Activity.board_id == board_id)
        )).scalar_one_or_none()
        if not anchor:
            raise HTTPException(status_code=400, detail="Invalid cursor")
        stmt = stmt.where(or_(
            Activity.created_at < anchor.created_at,
            and_(Activity.created_at == anchor.created_at, Activity.id <= anchor.id),
        ))

    items = list((await db.execute(stmt)).scalars().all())
    next_cursor = None
    if len(items) > limit:
        next_cursor = items.pop().id

    return ActivityPage(
        items=[
            ActivityOut(
                id=a.id,
                board_id=a.board_id,
                action=a.action,
                entity_type=a.entity_type,
                entity_id=a.entity_id,
                metadata=a.extra_data,
                user=user_brief(a.user),
                created_at=ts(a.created_at) or "",
            )
            for a in items
        ],
        next_cursor=next_cursor,
    )
