# models.py — Database models for the kanban portal
# - UUID string primary keys everywhere
# - 3-tier organisation roles (owner, admin, member)
# - Boards → columns → cards, ordered by integer position
# - Customers share boards through an access code
# - Append-only activity log per board

import uuid
from datetime import datetime, timezone
from enum import Enum as PyEnum
from sqlalchemy import (
    Column, String, DateTime, JSON, Boolean, BigInteger, Integer,
    Enum as SQLEnum, ForeignKey, Text, Index, Table, UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


def utcnow():
    return datetime.now(timezone.utc)


def new_uuid():
    return str(uuid.uuid4())


# ============================================================
# ENUMS
# ============================================================

class MemberRole(str, PyEnum):
    OWNER = "OWNER"
    ADMIN = "ADMIN"
    MEMBER = "MEMBER"


class CardPriority(str, PyEnum):
    NONE = "NONE"
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    URGENT = "URGENT"


class ActivityAction(str, PyEnum):
    BOARD_CREATED = "BOARD_CREATED"
    COLUMN_CREATED = "COLUMN_CREATED"
    COLUMN_DELETED = "COLUMN_DELETED"
    CARD_CREATED = "CARD_CREATED"
    CARD_UPDATED = "CARD_UPDATED"
    CARD_MOVED = "CARD_MOVED"
    CARD_DELETED = "CARD_DELETED"
    ASSIGNEE_ADDED = "ASSIGNEE_ADDED"
    ASSIGNEE_REMOVED = "ASSIGNEE_REMOVED"
    COMMENT_ADDED = "COMMENT_ADDED"
    LABEL_ADDED = "LABEL_ADDED"
    LABEL_REMOVED = "LABEL_REMOVED"
    ATTACHMENT_ADDED = "ATTACHMENT_ADDED"
    ATTACHMENT_REMOVED = "ATTACHMENT_REMOVED"
    MEMBER_ADDED = "MEMBER_ADDED"
    MEMBER_REMOVED = "MEMBER_REMOVED"


# ============================================================
# ASSOCIATION TABLES
# ============================================================

card_assignees = Table(
    "card_assignees",
    Base.metadata,
    Column("card_id", String, ForeignKey("cards.id", ondelete="CASCADE"), primary_key=True),
    Column("user_id", String, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
)

card_labels = Table(
    "card_labels",
    Base.metadata,
    Column("card_id", String, ForeignKey("cards.id", ondelete="CASCADE"), primary_key=True),
    Column("label_id", String, ForeignKey("labels.id", ondelete="CASCADE"), primary_key=True),
)

customer_boards = Table(
    "customer_boards",
    Base.metadata,
    Column("customer_id", String, ForeignKey("customers.id", ondelete="CASCADE"), primary_key=True),
    Column("board_id", String, ForeignKey("boards.id", ondelete="CASCADE"), primary_key=True),
)

invite_boards = Table(
    "invite_boards",
    Base.metadata,
    Column("invite_id", String, ForeignKey("invites.id", ondelete="CASCADE"), primary_key=True),
    Column("board_id", String, ForeignKey("boards.id", ondelete="CASCADE"), primary_key=True),
)


# ============================================================
# ORGANISATIONS
# ============================================================

class Organisation(Base):
    __tablename__ = "organisations"

    id = Column(String, primary_key=True, default=new_uuid)
    name = Column(String, nullable=False, index=True)
    slug = Column(String, unique=True, nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    # Relationships
    members = relationship(
        "Member", back_populates="organisation", order_by="Member.created_at",
        cascade="all, delete-orphan", passive_deletes=True,
    )
    boards = relationship("Board", back_populates="organisation", passive_deletes=True)
    customers = relationship("Customer", back_populates="organisation", passive_deletes=True)
    invites = relationship("Invite", back_populates="organisation", passive_deletes=True)


# ============================================================
# USERS & MEMBERSHIP
# ============================================================

class User(Base):
    __tablename__ = "users"

    id = Column(String, primary_key=True, default=new_uuid)
    email = Column(String, unique=True, nullable=False, index=True)
    display_name = Column(String, nullable=False, default="")
    avatar_url = Column(String, nullable=True)
    is_active = Column(Boolean, default=True, index=True)
    last_login_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    # A user belongs to exactly one organisation
    membership = relationship("Member", back_populates="user", uselist=False)


class Member(Base):
    """Organisation membership with a role"""
    __tablename__ = "members"

    id = Column(String, primary_key=True, default=new_uuid)
    organisation_id = Column(String, ForeignKey("organisations.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, unique=True)
    role = Column(SQLEnum(MemberRole), default=MemberRole.MEMBER, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    organisation = relationship("Organisation", back_populates="members")
    user = relationship("User", back_populates="membership")

    __table_args__ = (
        Index("idx_member_org_role", "organisation_id", "role"),
    )


# ============================================================
# AUTH TOKENS
# ============================================================

class MagicLinkToken(Base):
    """Single-use sign-in link. Only the sha256 of the emailed token is kept."""
    __tablename__ = "magic_link_tokens"

    id = Column(String, primary_key=True, default=new_uuid)
    token_hash = Column(String, unique=True, nullable=False, index=True)
    email = Column(String, nullable=False, index=True)
    display_name = Column(String, nullable=True)
    next_path = Column(String, nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    used_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)


class RevokedToken(Base):
    __tablename__ = "revoked_tokens"

    id = Column(String, primary_key=True, default=new_uuid)
    jti = Column(String, unique=True, nullable=False, index=True)  # JWT ID
    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    revoked_at = Column(DateTime(timezone=True), default=utcnow)


# ============================================================
# INVITES
# ============================================================

class Invite(Base):
    """Pending organisation membership, consumed on first login"""
    __tablename__ = "invites"

    id = Column(String, primary_key=True, default=new_uuid)
    organisation_id = Column(String, ForeignKey("organisations.id", ondelete="CASCADE"), nullable=False, index=True)
    email = Column(String, nullable=False, index=True)
    role = Column(SQLEnum(MemberRole), default=MemberRole.MEMBER, nullable=False)
    invited_by_id = Column(String, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    organisation = relationship("Organisation", back_populates="invites")
    invited_by = relationship("User")
    boards = relationship("Board", secondary=invite_boards, passive_deletes=True)

    __table_args__ = (
        UniqueConstraint("organisation_id", "email", name="uq_invite_org_email"),
    )


# ============================================================
# KANBAN BOARD
# ============================================================

class Board(Base):
    """Kanban board owned by an organisation"""
    __tablename__ = "boards"

    id = Column(String, primary_key=True, default=new_uuid)
    organisation_id = Column(String, ForeignKey("organisations.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    is_archived = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, index=True)

    # Relationships
    organisation = relationship("Organisation", back_populates="boards")
    columns = relationship(
        "BoardColumn", back_populates="board", order_by="BoardColumn.position",
        cascade="all, delete-orphan", passive_deletes=True,
    )
    labels = relationship(
        "Label", back_populates="board", order_by="Label.created_at",
        cascade="all, delete-orphan", passive_deletes=True,
    )
    members = relationship(
        "BoardMember", back_populates="board",
        cascade="all, delete-orphan", passive_deletes=True,
    )
    customers = relationship(
        "Customer", secondary=customer_boards, back_populates="boards", passive_deletes=True,
    )

    __table_args__ = (
        Index("idx_board_org_archived", "organisation_id", "is_archived"),
    )


class BoardMember(Base):
    """Explicit board access for MEMBER-role users"""
    __tablename__ = "board_members"

    id = Column(String, primary_key=True, default=new_uuid)
    board_id = Column(String, ForeignKey("boards.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    board = relationship("Board", back_populates="members")
    user = relationship("User")

    __table_args__ = (
        UniqueConstraint("board_id", "user_id", name="uq_board_member"),
    )


class BoardColumn(Base):
    """Ordered stage within a board"""
    __tablename__ = "board_columns"

    id = Column(String, primary_key=True, default=new_uuid)
    board_id = Column(String, ForeignKey("boards.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String, nullable=False)
    color = Column(String, nullable=True)  # Hex color for the column header
    position = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    # Relationships
    board = relationship("Board", back_populates="columns")
    cards = relationship(
        "Card", back_populates="column", order_by="Card.position",
        cascade="all, delete-orphan", passive_deletes=True,
    )

    __table_args__ = (
        Index("idx_col_board_pos", "board_id", "position"),
    )


class Label(Base):
    """Board-scoped label for categorising cards"""
    __tablename__ = "labels"

    id = Column(String, primary_key=True, default=new_uuid)
    board_id = Column(String, ForeignKey("boards.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String, nullable=False)
    color = Column(String, default="#6366f1")  # Hex color
    created_at = Column(DateTime(timezone=True), default=utcnow)

    board = relationship("Board", back_populates="labels")


class Card(Base):
    """Task card within a column"""
    __tablename__ = "cards"

    id = Column(String, primary_key=True, default=new_uuid)
    board_id = Column(String, ForeignKey("boards.id", ondelete="CASCADE"), nullable=False, index=True)
    column_id = Column(String, ForeignKey("board_columns.id", ondelete="CASCADE"), nullable=False, index=True)
    creator_id = Column(String, ForeignKey("users.id"), nullable=False)

    title = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    priority = Column(SQLEnum(CardPriority), default=CardPriority.NONE, nullable=False)
    position = Column(Integer, nullable=False, default=0)  # Order within column
    due_date = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    # Relationships
    column = relationship("BoardColumn", back_populates="cards")
    creator = relationship("User", foreign_keys=[creator_id])
    assignees = relationship("User", secondary=card_assignees, passive_deletes=True)
    labels = relationship("Label", secondary=card_labels, passive_deletes=True)
    comments = relationship(
        "Comment", back_populates="card", order_by="Comment.created_at",
        cascade="all, delete-orphan", passive_deletes=True,
    )
    attachments = relationship(
        "Attachment", back_populates="card", order_by="Attachment.created_at",
        cascade="all, delete-orphan", passive_deletes=True,
    )

    __table_args__ = (
        Index("idx_card_col_pos", "column_id", "position"),
    )


class Comment(Base):
    """Comment on a card, written by a user or by a customer (optionally a contact)"""
    __tablename__ = "comments"

    id = Column(String, primary_key=True, default=new_uuid)
    card_id = Column(String, ForeignKey("cards.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(String, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    customer_id = Column(String, ForeignKey("customers.id", ondelete="SET NULL"), nullable=True)
    customer_contact_id = Column(String, ForeignKey("customer_contacts.id", ondelete="SET NULL"), nullable=True)
    content = Column(Text, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    # Relationships
    card = relationship("Card", back_populates="comments")
    user = relationship("User")
    customer = relationship("Customer")
    customer_contact = relationship("CustomerContact")


class Attachment(Base):
    """File attached to a card; bytes live in attachment storage"""
    __tablename__ = "attachments"

    id = Column(String, primary_key=True, default=new_uuid)
    card_id = Column(String, ForeignKey("cards.id", ondelete="CASCADE"), nullable=False, index=True)
    uploader_id = Column(String, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    name = Column(String, nullable=False)
    url = Column(String, nullable=False)
    storage_path = Column(String, nullable=False)
    size = Column(BigInteger, default=0)
    mime_type = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    card = relationship("Card", back_populates="attachments")


# ============================================================
# ACTIVITY LOG (append-only)
# ============================================================

class Activity(Base):
    __tablename__ = "activities"

    id = Column(String, primary_key=True, default=new_uuid)
    board_id = Column(String, ForeignKey("boards.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(String, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    action = Column(String, nullable=False)
    entity_type = Column(String, nullable=False)
    entity_id = Column(String, nullable=False)
    extra_data = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    user = relationship("User")

    __table_args__ = (
        Index("idx_activity_board_time", "board_id", "created_at"),
    )


# ============================================================
# CUSTOMERS (external portal access)
# ============================================================

class Customer(Base):
    __tablename__ = "customers"

    id = Column(String, primary_key=True, default=new_uuid)
    organisation_id = Column(String, ForeignKey("organisations.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String, nullable=False)
    email = Column(String, nullable=True)
    access_code = Column(String, unique=True, nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    organisation = relationship("Organisation", back_populates="customers")
    boards = relationship(
        "Board", secondary=customer_boards, back_populates="customers", passive_deletes=True,
    )
    contacts = relationship(
        "CustomerContact", back_populates="customer", order_by="CustomerContact.created_at",
        cascade="all, delete-orphan", passive_deletes=True,
    )


class CustomerContact(Base):
    __tablename__ = "customer_contacts"

    id = Column(String, primary_key=True, default=new_uuid)
    customer_id = Column(String, ForeignKey("customers.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String, nullable=False)
    email = Column(String, nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    customer = relationship("Customer", back_populates="contacts")
