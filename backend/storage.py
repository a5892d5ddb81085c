# storage.py — Attachment file storage on the local filesystem
import os
import re
import uuid
import asyncio
import logging
from pathlib import Path
from typing import Iterable

logger = logging.getLogger("kanban-portal.storage")

# Storage directory (configurable via env)
STORAGE_ROOT = os.getenv("FILE_STORAGE_ROOT", "/data/attachments")
MAX_ATTACHMENT_BYTES = int(os.getenv("MAX_ATTACHMENT_BYTES", str(10 * 1024 * 1024)))

_UNSAFE_CHARS = re.compile(r"[^a-zA-Z0-9._-]")


class StoragePathError(ValueError):
    """Raised when a storage path would escape the storage root"""


def sanitize_filename(name: str) -> str:
    return _UNSAFE_CHARS.sub("_", name or "file")


def build_storage_path(board_id: str, card_id: str, filename: str) -> str:
    """Key layout is {board}/{card}/{8 hex}-{sanitized name}"""
    return f"{board_id}/{card_id}/{uuid.uuid4().hex[:8]}-{sanitize_filename(filename)}"


def resolve_path(storage_path: str) -> Path:
    root = Path(STORAGE_ROOT).resolve()
    target = (root / storage_path).resolve()
    if target != root and root not in target.parents:
        raise StoragePathError(f"Path escapes storage root: {storage_path}")
    return target


def resolve_card_path(storage_path: str, board_id: str, card_id: str) -> Path:
    """Resolve a key that must name a file inside the card's own folder"""
    segments = storage_path.split("/")
    if any(s in ("", ".", "..") for s in segments):
        raise StoragePathError(f"Path has empty or relative segments: {storage_path}")
    target = resolve_path(storage_path)
    if resolve_path(f"{board_id}/{card_id}") not in target.parents:
        raise StoragePathError(f"Path is outside the card folder: {storage_path}")
    return target


def _write(storage_path: str, data: bytes) -> None:
    target = resolve_path(storage_path)
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_bytes(data)


async def save_file(storage_path: str, data: bytes) -> None:
    await asyncio.to_thread(_write, storage_path, data)


def delete_files(storage_paths: Iterable[str]) -> None:
    """Best-effort removal. Failures are logged and never raised."""
    for storage_path in storage_paths:
        try:
            resolve_path(storage_path).unlink(missing_ok=True)
        except (OSError, StoragePathError) as e:
            logger.warning(f"Could not delete stored file {storage_path}: {e}")


def storage_is_writable() -> bool:
    root = Path(STORAGE_ROOT)
    try:
        root.mkdir(parents=True, exist_ok=True)
    except OSError:
        return False
    return os.access(root, os.W_OK)
