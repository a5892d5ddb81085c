# routers/portal.py — Public customer portal keyed by access code (no login)
from typing import Optional, List

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from activity import log_activity
from database import get_db_session
from models import Board, BoardColumn, Card, Comment, Customer, CustomerContact, ActivityAction
from routers.customers import ContactOut, contact_out
from routers.kanban import (
    CardSummaryOut, CommentOut, LabelOut, UserBrief,
    card_counts, card_summary_out, comment_out, label_out, user_brief, ts,
)
from routers.websocket_router import notify_board_changed

router = APIRouter(prefix="/api/v1/portal", tags=["Customer Portal"])


# --- Schemas ---

class PortalColumnOut(BaseModel):
    id: str
    name: str
    color: Optional[str] = None
    position: int
    cards: List[CardSummaryOut] = []


class PortalBoardOut(BaseModel):
    id: str
    name: str
    description: Optional[str] = None
    columns: List[PortalColumnOut] = []


class PortalOut(BaseModel):
    name: str
    boards: List[PortalBoardOut] = []
    contacts: List[ContactOut] = []


class PortalCardOut(BaseModel):
    id: str
    board_id: str
    column_id: str
    column_name: str
    title: str
    description: Optional[str] = None
    priority: str
    due_date: Optional[str] = None
    assignees: List[UserBrief] = []
    labels: List[LabelOut] = []
    comments: List[CommentOut] = []
    created_at: str
    updated_at: str


class ContactProfileUpdate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)


class PortalCommentCreate(BaseModel):
    content: str = Field(..., min_length=1, max_length=2000)
    contact_id: Optional[str] = None


# --- Helpers ---

async def _get_customer_by_code(access_code: str, db: AsyncSession, *options) -> Customer:
    stmt = (
        select(Customer)
        .where(Customer.access_code == access_code.strip().upper())
        .options(*options)
        .execution_options(populate_existing=True)
    )
    customer = (await db.execute(stmt)).scalar_one_or_none()
    if not customer:
        raise HTTPException(status_code=404, detail="Invalid access code")
    return customer


async def _get_shared_card(customer: Customer, card_id: str, db: AsyncSession, *options) -> Card:
    stmt = (
        select(Card)
        .where(Card.id == card_id)
        .options(*options)
        .execution_options(populate_existing=True)
    )
    card = (await db.execute(stmt)).scalar_one_or_none()
    if not card:
        raise HTTPException(status_code=404, detail="Card not found")
    if card.board_id not in {b.id for b in customer.boards}:
        raise HTTPException(status_code=403, detail="Access denied")
    return card


def _comment_options():
    return (
        selectinload(Comment.user),
        selectinload(Comment.customer),
        selectinload(Comment.customer_contact),
    )


# --- Endpoints ---

@router.get("/{access_code}", response_model=PortalOut)
async def get_portal(
    access_code: str,
    db: AsyncSession = Depends(get_db_session),
):
    """Shared boards and active contacts for a customer"""
    cards = selectinload(Customer.boards).selectinload(Board.columns).selectinload(BoardColumn.cards)
    customer = await _get_customer_by_code(
        access_code, db,
        cards.selectinload(Card.labels),
        selectinload(Customer.contacts),
    )

    boards = sorted((b for b in customer.boards if not b.is_archived), key=lambda b: b.name)
    comment_counts, attachment_counts = await card_counts(
        db, (c.id for b in boards for col in b.columns for c in col.cards)
    )
    contacts = sorted((c for c in customer.contacts if c.is_active), key=lambda c: c.name.lower())

    return PortalOut(
        name=customer.name,
        boards=[
            PortalBoardOut(
                id=b.id,
                name=b.name,
                description=b.description,
                columns=[
                    PortalColumnOut(
                        id=col.id,
                        name=col.name,
                        color=col.color,
                        position=col.position,
                        cards=[
                            card_summary_out(c, comment_counts, attachment_counts, include_assignees=False)
                            for c in col.cards
                        ],
                    )
                    for col in b.columns
                ],
            )
            for b in boards
        ],
        contacts=[contact_out(c) for c in contacts],
    )


@router.patch("/{access_code}/contacts/{contact_id}", response_model=ContactOut)
async def update_contact_profile(
    access_code: str,
    contact_id: str,
    data: ContactProfileUpdate,
    db: AsyncSession = Depends(get_db_session),
):
    """A contact may change their own display name"""
    customer = await _get_customer_by_code(access_code, db)
    stmt = select(CustomerContact).where(
        CustomerContact.id == contact_id, CustomerContact.customer_id == customer.id,
    )
    contact = (await db.execute(stmt)).scalar_one_or_none()
    if not contact:
        raise HTTPException(status_code=403, detail="Contact not found")

    contact.name = data.name
    await db.commit()
    return contact_out(contact)


@router.get("/{access_code}/cards/{card_id}", response_model=PortalCardOut)
async def get_portal_card(
    access_code: str,
    card_id: str,
    db: AsyncSession = Depends(get_db_session),
):
    """Card detail for a card on one of the customer's shared boards"""
    customer = await _get_customer_by_code(access_code, db, selectinload(Customer.boards))
    card = await _get_shared_card(
        customer, card_id, db,
        selectinload(Card.column),
        selectinload(Card.assignees),
        selectinload(Card.labels),
        selectinload(Card.comments).selectinload(Comment.user),
        selectinload(Card.comments).selectinload(Comment.customer),
        selectinload(Card.comments).selectinload(Comment.customer_contact),
    )

    return PortalCardOut(
        id=card.id,
        board_id=card.board_id,
        column_id=card.column_id,
        column_name=card.column.name if card.column else "",
        title=card.title,
        description=card.description,
        priority=card.priority.value if hasattr(card.priority, "value") else card.priority,
        due_date=ts(card.due_date),
        assignees=[user_brief(u) for u in card.assignees],
        labels=[label_out(label) for label in card.labels],
        comments=[comment_out(c) for c in card.comments],
        created_at=ts(card.created_at) or "",
        updated_at=ts(card.updated_at) or "",
    )


@router.post("/{access_code}/cards/{card_id}/comments", response_model=CommentOut, status_code=201)
async def add_portal_comment(
    access_code: str,
    card_id: str,
    data: PortalCommentCreate,
    db: AsyncSession = Depends(get_db_session),
):
    """Comment on a shared card as the customer, optionally as one of its contacts"""
    customer = await _get_customer_by_code(access_code, db, selectinload(Customer.boards))
    card = await _get_shared_card(customer, card_id, db)

    if data.contact_id:
        stmt = select(CustomerContact).where(
            CustomerContact.id == data.contact_id,
            CustomerContact.customer_id == customer.id,
            CustomerContact.is_active == True,
        )
        if not (await db.execute(stmt)).scalar_one_or_none():
            raise HTTPException(status_code=400, detail="Invalid contact")

    comment = Comment(
        card_id=card.id,
        content=data.content,
        customer_id=customer.id,
        customer_contact_id=data.contact_id,
    )
    db.add(comment)
    await db.commit()

    await log_activity(card.board_id, None, ActivityAction.COMMENT_ADDED, "Comment", comment.id,
                       {"card_id": card.id, "customer_id": customer.id})
    await notify_board_changed(card.board_id, customer.organisation_id, "Comment", "created")

    stmt = select(Comment).where(Comment.id == comment.id).options(*_comment_options())
    comment = (await db.execute(stmt.execution_options(populate_existing=True))).scalar_one()
    return comment_out(comment)
