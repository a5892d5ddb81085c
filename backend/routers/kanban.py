# routers/kanban.py — Kanban boards, columns, cards, labels and comments
import logging
from datetime import datetime
from typing import Optional, List, Dict, Iterable, Tuple

from fastapi import APIRouter, Depends, HTTPException, Query, BackgroundTasks
from pydantic import BaseModel, Field
from sqlalchemy import select, func, or_
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

import storage
from activity import log_activity
from auth import get_current_user, require_min_role, get_accessible_board, CurrentUser
from database import get_db_session
from models import (
    Board, BoardColumn, BoardMember, Card, CardPriority, Comment, Attachment, Label,
    Member, MemberRole, User, ActivityAction,
)
from routers.websocket_router import notify_board_changed

router = APIRouter(prefix="/api/v1/boards", tags=["Kanban"])
logger = logging.getLogger("kanban-portal.kanban")

require_admin = require_min_role(MemberRole.ADMIN, "Only admins can manage boards")
require_board_admin = require_min_role(MemberRole.ADMIN, "Only admins can manage board members")

HEX_COLOR = r"^#[0-9a-fA-F]{6}$"

DEFAULT_COLUMNS = [
    {"name": "To Do", "color": "#6366f1"},
    {"name": "In Progress", "color": "#f97316"},
    {"name": "Done", "color": "#22c55e"},
]


# ============================================================
# SCHEMAS
# ============================================================

class UserBrief(BaseModel):
    id: str
    name: str
    avatar_url: Optional[str] = None


class CustomerBrief(BaseModel):
    id: str
    name: str


class LabelOut(BaseModel):
    id: str
    name: str
    color: str


class CommentOut(BaseModel):
    id: str
    card_id: str
    content: str
    author_type: str  # "user" or "customer"
    user: Optional[UserBrief] = None
    customer: Optional[CustomerBrief] = None
    contact: Optional[CustomerBrief] = None
    created_at: str


class AttachmentOut(BaseModel):
    id: str
    card_id: str
    name: str
    url: str
    storage_path: str
    size: int
    mime_type: Optional[str] = None
    uploader_id: Optional[str] = None
    created_at: str


class CardSummaryOut(BaseModel):
    id: str
    board_id: str
    column_id: str
    title: str
    description: Optional[str] = None
    priority: str
    position: int
    due_date: Optional[str] = None
    assignees: List[UserBrief] = []
    labels: List[LabelOut] = []
    comment_count: int = 0
    attachment_count: int = 0
    created_at: str
    updated_at: str


class CardDetailOut(CardSummaryOut):
    creator: Optional[UserBrief] = None
    comments: List[CommentOut] = []
    attachments: List[AttachmentOut] = []


class ColumnSummaryOut(BaseModel):
    id: str
    name: str
    color: Optional[str] = None
    position: int
    card_count: int = 0


class ColumnOut(BaseModel):
    id: str
    board_id: str
    name: str
    color: Optional[str] = None
    position: int
    cards: List[CardSummaryOut] = []


class BoardSummaryOut(BaseModel):
    id: str
    name: str
    description: Optional[str] = None
    is_archived: bool
    columns: List[ColumnSummaryOut] = []
    created_at: str
    updated_at: str


class BoardOut(BaseModel):
    id: str
    organisation_id: str
    name: str
    description: Optional[str] = None
    is_archived: bool
    columns: List[ColumnOut] = []
    customers: List[CustomerBrief] = []
    created_at: str
    updated_at: str


class BoardCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = None


class BoardUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    description: Optional[str] = None


class BoardMemberOut(BaseModel):
    user_id: str
    member_id: str
    name: str
    email: str
    avatar_url: Optional[str] = None
    role: str
    is_board_member: bool


class BoardMemberAdd(BaseModel):
    user_id: str


class ColumnCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=50)
    color: Optional[str] = Field(default=None, pattern=HEX_COLOR)


class ColumnUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=50)
    color: Optional[str] = Field(default=None, pattern=HEX_COLOR)


class ColumnReorder(BaseModel):
    column_ids: List[str] = Field(..., min_length=1)


class CardCreate(BaseModel):
    column_id: str
    title: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = None


class CardUpdate(BaseModel):
    title: Optional[str] = Field(default=None, min_length=1, max_length=200)
    description: Optional[str] = None
    due_date: Optional[datetime] = None
    priority: Optional[CardPriority] = None


class CardMove(BaseModel):
    column_id: str
    position: int = Field(..., ge=0)


class AssigneeAdd(BaseModel):
    user_id: str


class CommentCreate(BaseModel):
    content: str = Field(..., min_length=1, max_length=5000)


class LabelCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=50)
    color: str = Field(default="#6366f1", pattern=HEX_COLOR)


class LabelUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=50)
    color: Optional[str] = Field(default=None, pattern=HEX_COLOR)


# ============================================================
# SERIALISERS
# ============================================================

def ts(dt: Optional[datetime]) -> Optional[str]:
    return dt.isoformat() if dt else None


def user_brief(u: Optional[User]) -> Optional[UserBrief]:
    if u is None:
        return None
    return UserBrief(id=u.id, name=u.display_name or u.email, avatar_url=u.avatar_url)


def label_out(label: Label) -> LabelOut:
    return LabelOut(id=label.id, name=label.name, color=label.color or "#6366f1")


def comment_out(c: Comment) -> CommentOut:
    return CommentOut(
        id=c.id,
        card_id=c.card_id,
        content=c.content,
        author_type="customer" if c.customer_id else "user",
        user=user_brief(c.user),
        customer=CustomerBrief(id=c.customer.id, name=c.customer.name) if c.customer else None,
        contact=CustomerBrief(id=c.customer_contact.id, name=c.customer_contact.name) if c.customer_contact else None,
        created_at=ts(c.created_at) or "",
    )


def attachment_out(a: Attachment) -> AttachmentOut:
    return AttachmentOut(
        id=a.id,
        card_id=a.card_id,
        name=a.name,
        url=a.url,
        storage_path=a.storage_path,
        size=a.size or 0,
        mime_type=a.mime_type,
        uploader_id=a.uploader_id,
        created_at=ts(a.created_at) or "",
    )


def card_summary_out(
    card: Card,
    comment_counts: Dict[str, int],
    attachment_counts: Dict[str, int],
    include_assignees: bool = True,
) -> CardSummaryOut:
    """Cards must be loaded with labels (and assignees when included)"""
    return CardSummaryOut(
        id=card.id,
        board_id=card.board_id,
        column_id=card.column_id,
        title=card.title,
        description=card.description,
        priority=card.priority.value if isinstance(card.priority, CardPriority) else card.priority,
        position=card.position or 0,
        due_date=ts(card.due_date),
        assignees=[user_brief(u) for u in card.assignees] if include_assignees else [],
        labels=[label_out(label) for label in card.labels],
        comment_count=comment_counts.get(card.id, 0),
        attachment_count=attachment_counts.get(card.id, 0),
        created_at=ts(card.created_at) or "",
        updated_at=ts(card.updated_at) or "",
    )


def card_detail_out(card: Card) -> CardDetailOut:
    summary = card_summary_out(
        card, {card.id: len(card.comments)}, {card.id: len(card.attachments)},
    )
    return CardDetailOut(
        **summary.model_dump(),
        creator=user_brief(card.creator),
        comments=[comment_out(c) for c in card.comments],
        attachments=[attachment_out(a) for a in card.attachments],
    )


def board_out(
    board: Board, comment_counts: Dict[str, int], attachment_counts: Dict[str, int],
) -> BoardOut:
    return BoardOut(
        id=board.id,
        organisation_id=board.organisation_id,
        name=board.name,
        description=board.description,
        is_archived=bool(board.is_archived),
        columns=[
            ColumnOut(
                id=col.id,
                board_id=col.board_id,
                name=col.name,
                color=col.color,
                position=col.position,
                cards=[card_summary_out(c, comment_counts, attachment_counts) for c in col.cards],
            )
            for col in board.columns
        ],
        customers=[CustomerBrief(id=c.id, name=c.name) for c in board.customers],
        created_at=ts(board.created_at) or "",
        updated_at=ts(board.updated_at) or "",
    )


def column_out(col: BoardColumn) -> ColumnOut:
    return ColumnOut(id=col.id, board_id=col.board_id, name=col.name, color=col.color, position=col.position)


# ============================================================
# INTERNAL HELPERS
# ============================================================

async def card_counts(db: AsyncSession, card_ids: Iterable[str]) -> Tuple[Dict[str, int], Dict[str, int]]:
    """Comment and attachment counts keyed by card id"""
    ids = list(card_ids)
    if not ids:
        return {}, {}
    com_stmt = (
        select(Comment.card_id, func.count(Comment.id))
        .where(Comment.card_id.in_(ids))
        .group_by(Comment.card_id)
    )
    att_stmt = (
        select(Attachment.card_id, func.count(Attachment.id))
        .where(Attachment.card_id.in_(ids))
        .group_by(Attachment.card_id)
    )
    comments = {cid: n for cid, n in (await db.execute(com_stmt)).all()}
    attachments = {cid: n for cid, n in (await db.execute(att_stmt)).all()}
    return comments, attachments


def card_detail_options():
    return (
        selectinload(Card.assignees),
        selectinload(Card.labels),
        selectinload(Card.creator),
        selectinload(Card.attachments),
        selectinload(Card.comments).selectinload(Comment.user),
        selectinload(Card.comments).selectinload(Comment.customer),
        selectinload(Card.comments).selectinload(Comment.customer_contact),
    )


async def get_board_card(board_id: str, card_id: str, db: AsyncSession, options=()) -> Card:
    stmt = (
        select(Card)
        .where(Card.id == card_id, Card.board_id == board_id)
        .options(*options)
        .execution_options(populate_existing=True)
    )
    card = (await db.execute(stmt)).scalar_one_or_none()
    if not card:
        raise HTTPException(status_code=404, detail="Card not found")
    return card


async def _get_column(board_id: str, column_id: str, db: AsyncSession) -> BoardColumn:
    stmt = select(BoardColumn).where(BoardColumn.id == column_id, BoardColumn.board_id == board_id)
    col = (await db.execute(stmt)).scalar_one_or_none()
    if not col:
        raise HTTPException(status_code=404, detail="Column not found")
    return col


async def _get_label(board_id: str, label_id: str, db: AsyncSession) -> Label:
    stmt = select(Label).where(Label.id == label_id, Label.board_id == board_id)
    label = (await db.execute(stmt)).scalar_one_or_none()
    if not label:
        raise HTTPException(status_code=404, detail="Label not found")
    return label


async def _get_org_user(user_id: str, org_id: str, db: AsyncSession) -> User:
    stmt = (
        select(User)
        .join(Member, Member.user_id == User.id)
        .where(User.id == user_id, Member.organisation_id == org_id)
    )
    target = (await db.execute(stmt)).scalar_one_or_none()
    if not target:
        raise HTTPException(status_code=400, detail="User is not a member of this organisation")
    return target


async def _load_board(board_id: str, db: AsyncSession) -> Board:
    cards = selectinload(Board.columns).selectinload(BoardColumn.cards)
    stmt = (
        select(Board)
        .where(Board.id == board_id)
        .options(
            cards.selectinload(Card.assignees),
            cards.selectinload(Card.labels),
            selectinload(Board.customers),
        )
        .execution_options(populate_existing=True)
    )
    return (await db.execute(stmt)).scalar_one()


async def _column_cards(column_id: str, db: AsyncSession) -> List[Card]:
    stmt = (
        select(Card)
        .where(Card.column_id == column_id)
        .order_by(Card.position.asc(), Card.created_at.asc())
    )
    return list((await db.execute(stmt)).scalars().all())


def _renumber(cards: List[Card]) -> None:
    for index, c in enumerate(cards):
        c.position = index


async def _attachment_paths(db: AsyncSession, *criteria) -> List[str]:
    stmt = select(Attachment.storage_path).join(Card, Card.id == Attachment.card_id).where(*criteria)
    return list((await db.execute(stmt)).scalars().all())


async def board_changed(
    board: Board,
    user_id: Optional[str],
    entity: str,
    entity_id: str,
    change: str,
    action: Optional[ActivityAction] = None,
    metadata: Optional[dict] = None,
) -> None:
    """Post-commit hook: activity entry (when an action is given) plus realtime refetch signal"""
    if action is not None:
        await log_activity(board.id, user_id, action, entity, entity_id, metadata)
    await notify_board_changed(board.id, board.organisation_id, entity, change)


# ============================================================
# BOARDS
# ============================================================

@router.get("", response_model=List[BoardSummaryOut])
async def list_boards(
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """List non-archived boards visible to the caller"""
    stmt = (
        select(Board)
        .where(Board.organisation_id == user.organisation_id, Board.is_archived == False)
        .options(selectinload(Board.columns))
        .order_by(Board.updated_at.desc())
    )
    if not user.is_admin:
        member_boards = select(BoardMember.board_id).where(BoardMember.user_id == user.id)
        stmt = stmt.where(Board.id.in_(member_boards))
    boards = (await db.execute(stmt)).scalars().all()

    column_ids = [col.id for b in boards for col in b.columns]
    counts: Dict[str, int] = {}
    if column_ids:
        count_stmt = (
            select(Card.column_id, func.count(Card.id))
            .where(Card.column_id.in_(column_ids))
            .group_by(Card.column_id)
        )
        counts = {cid: n for cid, n in (await db.execute(count_stmt)).all()}

    return [
        BoardSummaryOut(
            id=b.id,
            name=b.name,
            description=b.description,
            is_archived=bool(b.is_archived),
            columns=[
                ColumnSummaryOut(
                    id=col.id, name=col.name, color=col.color,
                    position=col.position, card_count=counts.get(col.id, 0),
                )
                for col in b.columns
            ],
            created_at=ts(b.created_at) or "",
            updated_at=ts(b.updated_at) or "",
        )
        for b in boards
    ]


@router.post("", response_model=BoardOut, status_code=201)
async def create_board(
    data: BoardCreate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Create a board seeded with the default columns"""
    board = Board(
        organisation_id=user.organisation_id,
        name=data.name,
        description=data.description,
    )
    db.add(board)
    await db.flush()

    for i, col_def in enumerate(DEFAULT_COLUMNS):
        db.add(BoardColumn(board_id=board.id, name=col_def["name"], color=col_def["color"], position=i))
    db.add(BoardMember(board_id=board.id, user_id=user.id))
    await db.commit()

    await board_changed(board, user.id, "Board", board.id, "created", ActivityAction.BOARD_CREATED, {"name": board.name})
    board = await _load_board(board.id, db)
    return board_out(board, {}, {})


@router.get("/{board_id}", response_model=BoardOut)
async def get_board(
    board_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Full board: columns, cards, assignees, labels and counts"""
    await get_accessible_board(board_id, user, db)
    board = await _load_board(board_id, db)
    comment_counts, attachment_counts = await card_counts(
        db, (c.id for col in board.columns for c in col.cards)
    )
    return board_out(board, comment_counts, attachment_counts)


@router.patch("/{board_id}", response_model=BoardOut)
async def update_board(
    board_id: str,
    data: BoardUpdate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Rename a board or change its description"""
    board = await get_accessible_board(board_id, user, db)
    for field, value in data.model_dump(exclude_unset=True).items():
        if field == "name" and value is None:
            continue
        setattr(board, field, value)
    await db.commit()

    await board_changed(board, user.id, "Board", board.id, "updated")
    return await get_board(board_id, user, db)


@router.post("/{board_id}/archive", response_model=BoardSummaryOut)
async def archive_board(
    board_id: str,
    user: CurrentUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session),
):
    """Hide a board from listings without deleting it"""
    board = await get_accessible_board(board_id, user, db)
    board.is_archived = True
    await db.commit()

    await board_changed(board, user.id, "Board", board.id, "archived")
    return BoardSummaryOut(
        id=board.id,
        name=board.name,
        description=board.description,
        is_archived=True,
        created_at=ts(board.created_at) or "",
        updated_at=ts(board.updated_at) or "",
    )


@router.delete("/{board_id}")
async def delete_board(
    board_id: str,
    background_tasks: BackgroundTasks,
    user: CurrentUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session),
):
    """Delete a board and everything on it"""
    board = await get_accessible_board(board_id, user, db)
    paths = await _attachment_paths(db, Card.board_id == board_id)

    await db.delete(board)
    await db.commit()

    background_tasks.add_task(storage.delete_files, paths)
    await notify_board_changed(board_id, user.organisation_id, "Board", "deleted")
    return {"status": "deleted"}


# ============================================================
# BOARD MEMBERS
# ============================================================

@router.get("/{board_id}/members", response_model=List[BoardMemberOut])
async def list_board_members(
    board_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Organisation members with their board membership flag"""
    board = await get_accessible_board(board_id, user, db)

    stmt = (
        select(Member)
        .where(Member.organisation_id == board.organisation_id)
        .options(selectinload(Member.user))
        .order_by(Member.created_at.asc())
    )
    members = (await db.execute(stmt)).scalars().all()
    board_user_ids = set((await db.execute(
        select(BoardMember.user_id).where(BoardMember.board_id == board_id)
    )).scalars().all())

    return [
        BoardMemberOut(
            user_id=m.user_id,
            member_id=m.id,
            name=m.user.display_name or m.user.email,
            email=m.user.email,
            avatar_url=m.user.avatar_url,
            role=m.role.value if isinstance(m.role, MemberRole) else m.role,
            is_board_member=m.user_id in board_user_ids,
        )
        for m in members
    ]


@router.post("/{board_id}/members", status_code=201)
async def add_board_member(
    board_id: str,
    data: BoardMemberAdd,
    user: CurrentUser = Depends(require_board_admin),
    db: AsyncSession = Depends(get_db_session),
):
    """Grant a member access to a board"""
    board = await get_accessible_board(board_id, user, db)
    await _get_org_user(data.user_id, board.organisation_id, db)

    stmt = select(BoardMember).where(BoardMember.board_id == board_id, BoardMember.user_id == data.user_id)
    if (await db.execute(stmt)).scalar_one_or_none():
        return {"status": "added", "user_id": data.user_id}

    db.add(BoardMember(board_id=board_id, user_id=data.user_id))
    await db.commit()

    await board_changed(board, user.id, "BoardMember", data.user_id, "created",
                        ActivityAction.MEMBER_ADDED, {"user_id": data.user_id})
    return {"status": "added", "user_id": data.user_id}


@router.delete("/{board_id}/members/{member_user_id}")
async def remove_board_member(
    board_id: str,
    member_user_id: str,
    user: CurrentUser = Depends(require_board_admin),
    db: AsyncSession = Depends(get_db_session),
):
    """Revoke a member's access to a board"""
    board = await get_accessible_board(board_id, user, db)
    stmt = select(BoardMember).where(BoardMember.board_id == board_id, BoardMember.user_id == member_user_id)
    membership = (await db.execute(stmt)).scalar_one_or_none()
    if not membership:
        raise HTTPException(status_code=404, detail="Board member not found")

    await db.delete(membership)
    await db.commit()

    await board_changed(board, user.id, "BoardMember", member_user_id, "deleted",
                        ActivityAction.MEMBER_REMOVED, {"user_id": member_user_id})
    return {"status": "removed"}


# ============================================================
# COLUMNS
# ============================================================

@router.post("/{board_id}/columns", response_model=ColumnOut, status_code=201)
async def create_column(
    board_id: str,
    data: ColumnCreate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Append a column to the board"""
    board = await get_accessible_board(board_id, user, db)

    max_pos = (await db.execute(
        select(func.max(BoardColumn.position)).where(BoardColumn.board_id == board_id)
    )).scalar()
    col = BoardColumn(
        board_id=board_id,
        name=data.name,
        color=data.color,
        position=(max_pos + 1) if max_pos is not None else 0,
    )
    db.add(col)
    await db.commit()

    await board_changed(board, user.id, "Column", col.id, "created",
                        ActivityAction.COLUMN_CREATED, {"name": col.name})
    return column_out(col)


@router.post("/{board_id}/columns/reorder", response_model=List[ColumnOut])
async def reorder_columns(
    board_id: str,
    data: ColumnReorder,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Rewrite every column position from the submitted order in one transaction"""
    board = await get_accessible_board(board_id, user, db)

    stmt = select(BoardColumn).where(BoardColumn.board_id == board_id)
    columns = {c.id: c for c in (await db.execute(stmt)).scalars().all()}
    if len(data.column_ids) != len(columns) or set(data.column_ids) != set(columns):
        raise HTTPException(status_code=400, detail="column_ids must list every column of the board exactly once")

    for index, column_id in enumerate(data.column_ids):
        columns[column_id].position = index
    await db.commit()

    await board_changed(board, user.id, "Column", board_id, "reordered")
    return [column_out(columns[cid]) for cid in data.column_ids]


@router.patch("/{board_id}/columns/{column_id}", response_model=ColumnOut)
async def update_column(
    board_id: str,
    column_id: str,
    data: ColumnUpdate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Rename or recolor a column"""
    board = await get_accessible_board(board_id, user, db)
    col = await _get_column(board_id, column_id, db)

    update_data = data.model_dump(exclude_unset=True)
    if update_data.get("name") is not None:
        col.name = update_data["name"]
    if "color" in update_data:
        col.color = update_data["color"]
    await db.commit()

    await board_changed(board, user.id, "Column", col.id, "updated")
    return column_out(col)


@router.delete("/{board_id}/columns/{column_id}")
async def delete_column(
    board_id: str,
    column_id: str,
    background_tasks: BackgroundTasks,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Delete a column together with its cards"""
    board = await get_accessible_board(board_id, user, db)
    col = await _get_column(board_id, column_id, db)
    paths = await _attachment_paths(db, Card.column_id == column_id)
    name = col.name

    await db.delete(col)
    await db.commit()

    background_tasks.add_task(storage.delete_files, paths)
    await board_changed(board, user.id, "Column", column_id, "deleted",
                        ActivityAction.COLUMN_DELETED, {"name": name})
    return {"status": "deleted"}


# ============================================================
# CARDS
# ============================================================

@router.post("/{board_id}/cards", response_model=CardSummaryOut, status_code=201)
async def create_card(
    board_id: str,
    data: CardCreate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Add a card to the end of a column"""
    board = await get_accessible_board(board_id, user, db)
    await _get_column(board_id, data.column_id, db)

    max_pos = (await db.execute(
        select(func.max(Card.position)).where(Card.column_id == data.column_id)
    )).scalar()
    card = Card(
        board_id=board_id,
        column_id=data.column_id,
        creator_id=user.id,
        title=data.title,
        description=data.description,
        priority=CardPriority.NONE,
        position=(max_pos + 1) if max_pos is not None else 0,
    )
    db.add(card)
    await db.commit()

    await board_changed(board, user.id, "Card", card.id, "created",
                        ActivityAction.CARD_CREATED, {"title": card.title})
    card = await get_board_card(board_id, card.id, db, (selectinload(Card.assignees), selectinload(Card.labels)))
    return card_summary_out(card, {}, {})


@router.get("/{board_id}/cards/search")
async def search_cards(
    board_id: str,
    q: str = Query(default=""),
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Case-insensitive match on title, description or comment text"""
    await get_accessible_board(board_id, user, db)
    query = q.strip()
    if not query:
        return {"card_ids": []}

    commented = select(Comment.card_id).where(Comment.content.icontains(query, autoescape=True))
    stmt = (
        select(Card.id)
        .where(
            Card.board_id == board_id,
            or_(
                Card.title.icontains(query, autoescape=True),
                Card.description.icontains(query, autoescape=True),
                Card.id.in_(commented),
            ),
        )
        .order_by(Card.position.asc())
    )
    return {"card_ids": list((await db.execute(stmt)).scalars().all())}


@router.get("/{board_id}/cards/{card_id}", response_model=CardDetailOut)
async def get_card(
    board_id: str,
    card_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Card with assignees, labels, comments, creator and attachments"""
    await get_accessible_board(board_id, user, db)
    card = await get_board_card(board_id, card_id, db, card_detail_options())
    return card_detail_out(card)


@router.patch("/{board_id}/cards/{card_id}", response_model=CardDetailOut)
async def update_card(
    board_id: str,
    card_id: str,
    data: CardUpdate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Update card fields; only fields that actually change are logged"""
    board = await get_accessible_board(board_id, user, db)
    card = await get_board_card(board_id, card_id, db)

    changed = []
    for field, value in data.model_dump(exclude_unset=True).items():
        if field in ("title", "priority") and value is None:
            continue
        if getattr(card, field) != value:
            setattr(card, field, value)
            changed.append(field)

    if changed:
        await db.commit()
        await board_changed(board, user.id, "Card", card.id, "updated",
                            ActivityAction.CARD_UPDATED, {"fields": changed})

    card = await get_board_card(board_id, card_id, db, card_detail_options())
    return card_detail_out(card)


@router.post("/{board_id}/cards/{card_id}/move", response_model=CardSummaryOut)
async def move_card(
    board_id: str,
    card_id: str,
    data: CardMove,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Move a card within or across columns, renumbering the affected columns"""
    board = await get_accessible_board(board_id, user, db)
    card = await get_board_card(board_id, card_id, db)
    target = await _get_column(board_id, data.column_id, db)
    source_column_id = card.column_id

    if source_column_id != target.id:
        source_cards = [c for c in await _column_cards(source_column_id, db) if c.id != card.id]
        _renumber(source_cards)

    target_cards = [c for c in await _column_cards(target.id, db) if c.id != card.id]
    target_cards.insert(min(data.position, len(target_cards)), card)
    card.column_id = target.id
    _renumber(target_cards)
    await db.commit()

    if source_column_id != target.id:
        await board_changed(board, user.id, "Card", card.id, "moved", ActivityAction.CARD_MOVED,
                            {"from_column_id": source_column_id, "to_column_id": target.id})
    else:
        await board_changed(board, user.id, "Card", card.id, "moved")

    card = await get_board_card(board_id, card_id, db, (selectinload(Card.assignees), selectinload(Card.labels)))
    comment_counts, attachment_counts = await card_counts(db, [card.id])
    return card_summary_out(card, comment_counts, attachment_counts)


@router.delete("/{board_id}/cards/{card_id}")
async def delete_card(
    board_id: str,
    card_id: str,
    background_tasks: BackgroundTasks,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Delete a card with its comments and attachments"""
    board = await get_accessible_board(board_id, user, db)
    card = await get_board_card(board_id, card_id, db)
    paths = await _attachment_paths(db, Card.id == card_id)
    title = card.title

    await db.delete(card)
    await db.commit()

    background_tasks.add_task(storage.delete_files, paths)
    await board_changed(board, user.id, "Card", card_id, "deleted",
                        ActivityAction.CARD_DELETED, {"title": title})
    return {"status": "deleted"}


# ============================================================
# ASSIGNEES
# ============================================================

@router.post("/{board_id}/cards/{card_id}/assignees", response_model=CardSummaryOut)
async def add_assignee(
    board_id: str,
    card_id: str,
    data: AssigneeAdd,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Assign an organisation member to a card"""
    board = await get_accessible_board(board_id, user, db)
    card = await get_board_card(board_id, card_id, db, (selectinload(Card.assignees), selectinload(Card.labels)))
    assignee = await _get_org_user(data.user_id, board.organisation_id, db)

    if all(a.id != assignee.id for a in card.assignees):
        card.assignees.append(assignee)
        await db.commit()
        await board_changed(board, user.id, "Card", card.id, "updated",
                            ActivityAction.ASSIGNEE_ADDED, {"assignee_id": assignee.id})

    comment_counts, attachment_counts = await card_counts(db, [card.id])
    return card_summary_out(card, comment_counts, attachment_counts)


@router.delete("/{board_id}/cards/{card_id}/assignees/{assignee_id}", response_model=CardSummaryOut)
async def remove_assignee(
    board_id: str,
    card_id: str,
    assignee_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Unassign a user from a card"""
    board = await get_accessible_board(board_id, user, db)
    card = await get_board_card(board_id, card_id, db, (selectinload(Card.assignees), selectinload(Card.labels)))

    remaining = [a for a in card.assignees if a.id != assignee_id]
    if len(remaining) != len(card.assignees):
        card.assignees = remaining
        await db.commit()
        await board_changed(board, user.id, "Card", card.id, "updated",
                            ActivityAction.ASSIGNEE_REMOVED, {"assignee_id": assignee_id})

    comment_counts, attachment_counts = await card_counts(db, [card.id])
    return card_summary_out(card, comment_counts, attachment_counts)


# ============================================================
# COMMENTS
# ============================================================

@router.post("/{board_id}/cards/{card_id}/comments", response_model=CommentOut, status_code=201)
async def add_comment(
    board_id: str,
    card_id: str,
    data: CommentCreate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Add a team comment to a card"""
    board = await get_accessible_board(board_id, user, db)
    card = await get_board_card(board_id, card_id, db)

    comment = Comment(card_id=card.id, user_id=user.id, content=data.content)
    db.add(comment)
    await db.commit()

    await board_changed(board, user.id, "Comment", comment.id, "created",
                        ActivityAction.COMMENT_ADDED, {"card_id": card.id})

    stmt = select(Comment).where(Comment.id == comment.id).options(
        selectinload(Comment.user), selectinload(Comment.customer), selectinload(Comment.customer_contact),
    )
    comment = (await db.execute(stmt.execution_options(populate_existing=True))).scalar_one()
    return comment_out(comment)


# ============================================================
# LABELS
# ============================================================

@router.get("/{board_id}/labels", response_model=List[LabelOut])
async def list_labels(
    board_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Board labels in creation order"""
    await get_accessible_board(board_id, user, db)
    stmt = select(Label).where(Label.board_id == board_id).order_by(Label.created_at.asc())
    return [label_out(label) for label in (await db.execute(stmt)).scalars().all()]


@router.post("/{board_id}/labels", response_model=LabelOut, status_code=201)
async def create_label(
    board_id: str,
    data: LabelCreate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Create a new label for a board"""
    board = await get_accessible_board(board_id, user, db)

    label = Label(board_id=board_id, name=data.name, color=data.color)
    db.add(label)
    await db.commit()

    await board_changed(board, user.id, "Label", label.id, "created")
    return label_out(label)


@router.patch("/{board_id}/labels/{label_id}", response_model=LabelOut)
async def update_label(
    board_id: str,
    label_id: str,
    data: LabelUpdate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Rename or recolor a label"""
    board = await get_accessible_board(board_id, user, db)
    label = await _get_label(board_id, label_id, db)

    for field, value in data.model_dump(exclude_unset=True).items():
        if value is not None:
            setattr(label, field, value)
    await db.commit()

    await board_changed(board, user.id, "Label", label.id, "updated")
    return label_out(label)


@router.delete("/{board_id}/labels/{label_id}")
async def delete_label(
    board_id: str,
    label_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Delete a label"""
    board = await get_accessible_board(board_id, user, db)
    label = await _get_label(board_id, label_id, db)
    await db.delete(label)
    await db.commit()

    await board_changed(board, user.id, "Label", label_id, "deleted")
    return {"status": "deleted"}


@router.post("/{board_id}/cards/{card_id}/labels/{label_id}", response_model=CardSummaryOut)
async def add_label_to_card(
    board_id: str,
    card_id: str,
    label_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Attach a board label to a card"""
    board = await get_accessible_board(board_id, user, db)
    card = await get_board_card(board_id, card_id, db, (selectinload(Card.assignees), selectinload(Card.labels)))
    label = (await db.execute(select(Label).where(Label.id == label_id))).scalar_one_or_none()
    if not label or label.board_id != board_id:
        raise HTTPException(status_code=400, detail="Label does not belong to this board")

    if all(existing.id != label.id for existing in card.labels):
        card.labels.append(label)
        await db.commit()
        await board_changed(board, user.id, "Card", card.id, "updated",
                            ActivityAction.LABEL_ADDED, {"label_id": label.id, "card_id": card.id})

    comment_counts, attachment_counts = await card_counts(db, [card.id])
    return card_summary_out(card, comment_counts, attachment_counts)


@router.delete("/{board_id}/cards/{card_id}/labels/{label_id}", response_model=CardSummaryOut)
async def remove_label_from_card(
    board_id: str,
    card_id: str,
    label_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Detach a label from a card"""
    board = await get_accessible_board(board_id, user, db)
    card = await get_board_card(board_id, card_id, db, (selectinload(Card.assignees), selectinload(Card.labels)))

    remaining = [existing for existing in card.labels if existing.id != label_id]
    if len(remaining) != len(card.labels):
        card.labels = remaining
        await db.commit()
        await board_changed(board, user.id, "Card", card.id, "updated",
                            ActivityAction.LABEL_REMOVED, {"label_id": label_id, "card_id": card.id})

    comment_counts, attachment_counts = await card_counts(db, [card.id])
    return card_summary_out(card, comment_counts, attachment_counts)
