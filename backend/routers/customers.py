# routers/customers.py — External customers, their contacts and shared boards
import secrets
from typing import Optional, List

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, EmailStr, Field
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from auth import get_current_user, require_min_role, CurrentUser
from database import get_db_session
from models import Customer, CustomerContact, Board, MemberRole
from routers.kanban import ts
from routers.websocket_router import notify_board_changed

router = APIRouter(prefix="/api/v1/customers", tags=["Customers"])

require_admin = require_min_role(MemberRole.ADMIN, "Only admins can manage customers")

ACCESS_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
ACCESS_CODE_LENGTH = 8
MAX_CODE_ATTEMPTS = 10


# --- Schemas ---

class CustomerCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    email: Optional[EmailStr] = None


class CustomerUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    email: Optional[EmailStr] = None


class ContactCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    email: Optional[EmailStr] = None


class ContactUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    email: Optional[EmailStr] = None
    is_active: Optional[bool] = None


class ContactOut(BaseModel):
    id: str
    customer_id: str
    name: str
    email: Optional[str] = None
    is_active: bool
    created_at: str


class SharedBoardOut(BaseModel):
    id: str
    name: str


class CustomerOut(BaseModel):
    id: str
    name: str
    email: Optional[str] = None
    access_code: str
    boards: List[SharedBoardOut] = []
    contacts: List[ContactOut] = []
    contact_count: int = 0
    created_at: str


# --- Helpers ---

def generate_access_code() -> str:
    return "".join(secrets.choice(ACCESS_CODE_ALPHABET) for _ in range(ACCESS_CODE_LENGTH))


async def _unique_access_code(db: AsyncSession) -> str:
    for _ in range(MAX_CODE_ATTEMPTS):
        code = generate_access_code()
        taken = await db.execute(select(Customer.id).where(Customer.access_code == code))
        if not taken.scalar_one_or_none():
            return code
    raise HTTPException(status_code=503, detail="Could not allocate a unique access code")


async def _commit_access_code(db: AsyncSession) -> None:
    """Commit a new access code; losing a race to the unique index is a 409"""
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise HTTPException(status_code=409, detail="Access code was taken concurrently, please retry")


def contact_out(c: CustomerContact) -> ContactOut:
    return ContactOut(
        id=c.id,
        customer_id=c.customer_id,
        name=c.name,
        email=c.email,
        is_active=bool(c.is_active),
        created_at=ts(c.created_at) or "",
    )


def _customer_to_out(c: Customer) -> CustomerOut:
    return CustomerOut(
        id=c.id,
        name=c.name,
        email=c.email,
        access_code=c.access_code,
        boards=[SharedBoardOut(id=b.id, name=b.name) for b in c.boards],
        contacts=[contact_out(ct) for ct in c.contacts],
        contact_count=len(c.contacts),
        created_at=ts(c.created_at) or "",
    )


async def _get_customer(customer_id: str, org_id: str, db: AsyncSession) -> Customer:
    stmt = (
        select(Customer)
        .where(Customer.id == customer_id, Customer.organisation_id == org_id)
        .options(selectinload(Customer.boards), selectinload(Customer.contacts))
        .execution_options(populate_existing=True)
    )
    customer = (await db.execute(stmt)).scalar_one_or_none()
    if not customer:
        raise HTTPException(status_code=404, detail="Customer not found")
    return customer


async def _get_org_board(board_id: str, org_id: str, db: AsyncSession) -> Board:
    stmt = select(Board).where(Board.id == board_id, Board.organisation_id == org_id)
    board = (await db.execute(stmt)).scalar_one_or_none()
    if not board:
        raise HTTPException(status_code=404, detail="Board not found")
    return board


async def _get_contact(customer_id: str, contact_id: str, db: AsyncSession) -> CustomerContact:
    stmt = select(CustomerContact).where(
        CustomerContact.id == contact_id, CustomerContact.customer_id == customer_id,
    )
    contact = (await db.execute(stmt)).scalar_one_or_none()
    if not contact:
        raise HTTPException(status_code=404, detail="Contact not found")
    return contact


# --- Customers ---

@router.get("", response_model=List[CustomerOut])
async def list_customers(
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Customers newest first, with shared boards and contacts"""
    stmt = (
        select(Customer)
        .where(Customer.organisation_id == user.organisation_id)
        .options(selectinload(Customer.boards), selectinload(Customer.contacts))
        .order_by(Customer.created_at.desc())
    )
    return [_customer_to_out(c) for c in (await db.execute(stmt)).scalars().all()]


@router.post("", response_model=CustomerOut, status_code=201)
async def create_customer(
    data: CustomerCreate,
    user: CurrentUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session),
):
    """Create a customer with a fresh portal access code"""
    customer = Customer(
        organisation_id=user.organisation_id,
        name=data.name,
        email=data.email,
        access_code=await _unique_access_code(db),
    )
    db.add(customer)
    await _commit_access_code(db)
    return _customer_to_out(await _get_customer(customer.id, user.organisation_id, db))


@router.patch("/{customer_id}", response_model=CustomerOut)
async def update_customer(
    customer_id: str,
    data: CustomerUpdate,
    user: CurrentUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session),
):
    customer = await _get_customer(customer_id, user.organisation_id, db)
    update_data = data.model_dump(exclude_unset=True)
    if update_data.get("name") is not None:
        customer.name = update_data["name"]
    if "email" in update_data:
        customer.email = update_data["email"]
    await db.commit()
    return _customer_to_out(customer)


@router.delete("/{customer_id}")
async def delete_customer(
    customer_id: str,
    user: CurrentUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session),
):
    customer = await _get_customer(customer_id, user.organisation_id, db)
    await db.delete(customer)
    await db.commit()
    return {"status": "deleted"}


@router.post("/{customer_id}/regenerate-code", response_model=CustomerOut)
async def regenerate_access_code(
    customer_id: str,
    user: CurrentUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session),
):
    """Issue a new access code; the old portal link stops working"""
    customer = await _get_customer(customer_id, user.organisation_id, db)
    customer.access_code = await _unique_access_code(db)
    await _commit_access_code(db)
    return _customer_to_out(customer)


# --- Board sharing ---

@router.post("/{customer_id}/boards/{board_id}", response_model=CustomerOut)
async def share_board(
    customer_id: str,
    board_id: str,
    user: CurrentUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session),
):
    """Make a board visible in the customer's portal"""
    customer = await _get_customer(customer_id, user.organisation_id, db)
    board = await _get_org_board(board_id, user.organisation_id, db)

    if all(b.id != board.id for b in customer.boards):
        customer.boards.append(board)
        await db.commit()
        await notify_board_changed(board.id, board.organisation_id, "Customer", "shared")
    return _customer_to_out(customer)


@router.delete("/{customer_id}/boards/{board_id}", response_model=CustomerOut)
async def unshare_board(
    customer_id: str,
    board_id: str,
    user: CurrentUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session),
):
    customer = await _get_customer(customer_id, user.organisation_id, db)

    remaining = [b for b in customer.boards if b.id != board_id]
    if len(remaining) != len(customer.boards):
        customer.boards = remaining
        await db.commit()
        await notify_board_changed(board_id, user.organisation_id, "Customer", "unshared")
    return _customer_to_out(customer)


# --- Contacts ---

@router.get("/{customer_id}/contacts", response_model=List[ContactOut])
async def list_contacts(
    customer_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    customer = await _get_customer(customer_id, user.organisation_id, db)
    return [contact_out(c) for c in customer.contacts]


@router.post("/{customer_id}/contacts", response_model=ContactOut, status_code=201)
async def add_contact(
    customer_id: str,
    data: ContactCreate,
    user: CurrentUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session),
):
    customer = await _get_customer(customer_id, user.organisation_id, db)
    contact = CustomerContact(customer_id=customer.id, name=data.name, email=data.email, is_active=True)
    db.add(contact)
    await db.commit()
    return contact_out(contact)


@router.patch("/{customer_id}/contacts/{contact_id}", response_model=ContactOut)
async def update_contact(
    customer_id: str,
    contact_id: str,
    data: ContactUpdate,
    user: CurrentUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session),
):
    await _get_customer(customer_id, user.organisation_id, db)
    contact = await _get_contact(customer_id, contact_id, db)

    update_data = data.model_dump(exclude_unset=True)
    for field in ("name", "is_active"):
        if update_data.get(field) is not None:
            setattr(contact, field, update_data[field])
    if "email" in update_data:
        contact.email = update_data["email"]
    await db.commit()
    return contact_out(contact)


@router.delete("/{customer_id}/contacts/{contact_id}")
async def delete_contact(
    customer_id: str,
    contact_id: str,
    user: CurrentUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session),
):
    await _get_customer(customer_id, user.organisation_id, db)
    contact = await _get_contact(customer_id, contact_id, db)
    await db.delete(contact)
    await db.commit()
    return {"status": "deleted"}
