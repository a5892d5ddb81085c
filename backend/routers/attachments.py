# routers/attachments.py — Card attachments backed by attachment storage
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, BackgroundTasks, UploadFile, File as FastAPIFile
from fastapi.responses import FileResponse
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

import storage
from auth import get_current_user, get_accessible_board, CurrentUser
from database import get_db_session
from models import Attachment, Card, ActivityAction, new_uuid
from routers.kanban import AttachmentOut, attachment_out, board_changed, get_board_card

router = APIRouter(prefix="/api/v1", tags=["Attachments"])


class AttachmentRecord(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    url: str = Field(..., min_length=1)
    storage_path: str = Field(..., min_length=1)
    size: int = Field(..., ge=0)
    mime_type: Optional[str] = None


def _download_url(attachment_id: str) -> str:
    return f"/api/v1/attachments/{attachment_id}/download"


async def _record_attachment(
    board, card: Card, user: CurrentUser, db: AsyncSession, owns_file: bool = False, **fields
) -> Attachment:
    attachment = Attachment(card_id=card.id, uploader_id=user.id, **fields)
    db.add(attachment)
    try:
        await db.commit()
    except SQLAlchemyError:
        await db.rollback()
        # Uploaded bytes have no row to own them
        if owns_file:
            storage.delete_files([fields["storage_path"]])
        raise

    await board_changed(board, user.id, "Attachment", attachment.id, "created",
                        ActivityAction.ATTACHMENT_ADDED, {"name": attachment.name, "card_id": card.id})
    return attachment


@router.post("/boards/{board_id}/cards/{card_id}/attachments", response_model=AttachmentOut, status_code=201)
async def upload_attachment(
    board_id: str,
    card_id: str,
    file: UploadFile = FastAPIFile(...),
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Store an uploaded file and attach it to a card"""
    board = await get_accessible_board(board_id, user, db)
    card = await get_board_card(board_id, card_id, db)

    data = await file.read(storage.MAX_ATTACHMENT_BYTES + 1)
    if len(data) > storage.MAX_ATTACHMENT_BYTES:
        raise HTTPException(status_code=413, detail="File exceeds the 10MB attachment limit")

    name = file.filename or "file"
    storage_path = storage.build_storage_path(board_id, card_id, name)
    await storage.save_file(storage_path, data)

    attachment_id = new_uuid()
    attachment = await _record_attachment(
        board, card, user, db,
        owns_file=True,
        id=attachment_id,
        name=name,
        url=_download_url(attachment_id),
        storage_path=storage_path,
        size=len(data),
        mime_type=file.content_type,
    )
    return attachment_out(attachment)


@router.post("/boards/{board_id}/cards/{card_id}/attachments/metadata", response_model=AttachmentOut, status_code=201)
async def record_attachment(
    board_id: str,
    card_id: str,
    data: AttachmentRecord,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Record a file the client already placed in storage"""
    board = await get_accessible_board(board_id, user, db)
    card = await get_board_card(board_id, card_id, db)

    if not data.storage_path.startswith(f"{board_id}/{card_id}/"):
        raise HTTPException(status_code=400, detail="storage_path must live under the card's folder")
    if data.size > storage.MAX_ATTACHMENT_BYTES:
        raise HTTPException(status_code=413, detail="File exceeds the 10MB attachment limit")
    try:
        storage.resolve_card_path(data.storage_path, board_id, card_id)
    except storage.StoragePathError:
        raise HTTPException(status_code=400, detail="Invalid storage_path")

    attachment = await _record_attachment(board, card, user, db, **data.model_dump())
    return attachment_out(attachment)


@router.get("/attachments/{attachment_id}/download")
async def download_attachment(
    attachment_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Stream an attachment to a user who can see its board"""
    stmt = (
        select(Attachment, Card.board_id)
        .join(Card, Card.id == Attachment.card_id)
        .where(Attachment.id == attachment_id)
    )
    row = (await db.execute(stmt)).one_or_none()
    if not row:
        raise HTTPException(status_code=404, detail="Attachment not found")
    attachment, board_id = row
    await get_accessible_board(board_id, user, db)

    path = storage.resolve_path(attachment.storage_path)
    if not path.is_file():
        raise HTTPException(status_code=404, detail="Attachment file is missing")
    return FileResponse(path, media_type=attachment.mime_type or "application/octet-stream", filename=attachment.name)


@router.delete("/boards/{board_id}/cards/{card_id}/attachments/{attachment_id}")
async def delete_attachment(
    board_id: str,
    card_id: str,
    attachment_id: str,
    background_tasks: BackgroundTasks,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Remove the attachment record, then its stored file"""
    board = await get_accessible_board(board_id, user, db)
    await get_board_card(board_id, card_id, db)

    stmt = select(Attachment).where(Attachment.id == attachment_id, Attachment.card_id == card_id)
    attachment = (await db.execute(stmt)).scalar_one_or_none()
    if not attachment:
        raise HTTPException(status_code=404, detail="Attachment not found")

    storage_path, name = attachment.storage_path, attachment.name
    await db.delete(attachment)
    await db.commit()

    background_tasks.add_task(storage.delete_files, [storage_path])
    await board_changed(board, user.id, "Attachment", attachment_id, "deleted",
                        ActivityAction.ATTACHMENT_REMOVED, {"name": name, "card_id": card_id})
    return {"status": "deleted"}
