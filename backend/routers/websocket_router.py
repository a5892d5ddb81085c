# routers/websocket_router.py — Realtime board change notifications
import uuid
import logging
from datetime import datetime, timezone
from typing import Dict, Set, Tuple

from fastapi import APIRouter, WebSocket, WebSocketDisconnect, HTTPException, Query
from sqlalchemy import select

import database
from auth import AuthService, ADMIN_ROLES, has_board_membership
from models import Board, Member

router = APIRouter(tags=["WebSocket"])
logger = logging.getLogger("kanban-portal.ws")


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class ConnectionManager:
    """Tracks every open socket and the boards each socket watches.

    A user may hold several sockets (one per tab), so subscriptions belong
    to the connection, not the user.
    """

    def __init__(self):
        self._sockets: Dict[str, WebSocket] = {}  # conn_id -> ws
        self._owners: Dict[str, Tuple[str, str]] = {}  # conn_id -> (user_id, org_id)
        self._subscriptions: Dict[str, Set[str]] = {}  # board_id -> {conn_ids}

    async def connect(self, websocket: WebSocket, user_id: str, org_id: str) -> str:
        await websocket.accept()
        conn_id = uuid.uuid4().hex
        self._sockets[conn_id] = websocket
        self._owners[conn_id] = (user_id, org_id)
        logger.info(f"WS connected: user={user_id[:8]} org={org_id[:8]} conn={conn_id[:8]}")
        return conn_id

    def disconnect(self, conn_id: str):
        self._sockets.pop(conn_id, None)
        owner = self._owners.pop(conn_id, None)
        for board_id in list(self._subscriptions.keys()):
            self.unsubscribe(conn_id, board_id)
        if owner:
            logger.info(f"WS disconnected: user={owner[0][:8]} conn={conn_id[:8]}")

    def subscribe(self, conn_id: str, board_id: str):
        if conn_id in self._sockets:
            self._subscriptions.setdefault(board_id, set()).add(conn_id)

    def unsubscribe(self, conn_id: str, board_id: str):
        if board_id in self._subscriptions:
            self._subscriptions[board_id].discard(conn_id)
            if not self._subscriptions[board_id]:
                del self._subscriptions[board_id]

    def subscribers(self, board_id: str) -> Set[str]:
        return set(self._subscriptions.get(board_id, set()))

    async def send(self, conn_id: str, message: dict):
        ws = self._sockets.get(conn_id)
        if ws is None:
            return
        try:
            await ws.send_json(message)
        except Exception as e:
            logger.warning(f"WS send to conn={conn_id[:8]} failed, dropping socket: {e}")
            self.disconnect(conn_id)

    async def broadcast_to_board(self, board_id: str, org_id: str, message: dict):
        for conn_id in self.subscribers(board_id):
            owner = self._owners.get(conn_id)
            if owner and owner[1] == org_id:
                await self.send(conn_id, message)

    def get_stats(self) -> dict:
        owners = self._owners.values()
        return {
            "total_connections": len(self._sockets),
            "users": len({user_id for user_id, _ in owners}),
            "organisations": len({org_id for _, org_id in owners}),
            "boards": len(self._subscriptions),
        }


# Global connection manager
manager = ConnectionManager()


async def notify_board_changed(board_id: str, org_id: str, entity: str, action: str) -> None:
    """Tell subscribed clients to refetch a board"""
    await manager.broadcast_to_board(board_id, org_id, {
        "type": "board.changed",
        "board_id": board_id,
        "entity": entity,
        "action": action,
        "timestamp": _now(),
    })


async def _is_revoked(jti: str) -> bool:
    async with database.async_session_maker() as db:
        return await AuthService.is_token_revoked(jti, db)


async def _can_subscribe(user_id: str, org_id: str, board_id: str) -> bool:
    async with database.async_session_maker() as db:
        board = (await db.execute(
            select(Board.id).where(Board.id == board_id, Board.organisation_id == org_id)
        )).scalar_one_or_none()
        if not board:
            return False
        role = (await db.execute(
            select(Member.role).where(Member.user_id == user_id, Member.organisation_id == org_id)
        )).scalar_one_or_none()
        if role is None:
            return False
        role_value = role.value if hasattr(role, "value") else role
        if role_value in ADMIN_ROLES:
            return True
        return await has_board_membership(board_id, user_id, db)


@router.websocket("/ws")
async def websocket_endpoint(
    websocket: WebSocket,
    token: str = Query(...),
):
    """Board change feed. Clients subscribe per board and refetch on change."""
    try:
        payload = AuthService.verify_token(token)
    except HTTPException:
        await websocket.close(code=4001, reason="Authentication failed")
        return

    user_id = payload.get("sub")
    org_id = payload.get("organisation_id")
    if payload.get("type") != "access" or not user_id or not org_id:
        await websocket.close(code=4001, reason="Invalid token")
        return
    jti = payload.get("jti")
    if jti and await _is_revoked(jti):
        await websocket.close(code=4001, reason="Token has been revoked")
        return

    conn_id = await manager.connect(websocket, user_id, org_id)
    await websocket.send_json({"type": "connected", "user_id": user_id, "timestamp": _now()})

    try:
        while True:
            data = await websocket.receive_json()
            msg_type = data.get("type", "")

            if msg_type == "ping":
                await websocket.send_json({"type": "pong", "timestamp": _now()})

            elif msg_type == "subscribe":
                board_id = data.get("board_id", "")
                if board_id and await _can_subscribe(user_id, org_id, board_id):
                    manager.subscribe(conn_id, board_id)
                    await websocket.send_json({"type": "subscribed", "board_id": board_id})
                else:
                    await websocket.send_json({"type": "error", "board_id": board_id, "detail": "Board not available"})

            elif msg_type == "unsubscribe":
                board_id = data.get("board_id", "")
                if board_id:
                    manager.unsubscribe(conn_id, board_id)
                    await websocket.send_json({"type": "unsubscribed", "board_id": board_id})

    except WebSocketDisconnect:
        pass
    except Exception as e:
        logger.error(f"WebSocket error: {e}")
    finally:
        manager.disconnect(conn_id)


@router.get("/ws/stats")
async def websocket_stats():
    """Get WebSocket connection statistics"""
    return manager.get_stats()
