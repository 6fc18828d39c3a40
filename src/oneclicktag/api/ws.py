"""WebSocket endpoint streaming batch progress to live viewers."""

from __future__ import annotations

import logging

import jwt
from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from sqlalchemy import select

from oneclicktag.auth.jwt import decode_access_token
from oneclicktag.events.broadcaster import get_broadcaster
from oneclicktag.events.types import BatchProgressEvent
from oneclicktag.storage.database import get_session
from oneclicktag.storage.models import TrackingBatch
from oneclicktag.tenancy.context import TenantContext, tenant_scope
from oneclicktag.tenancy.lookup import fetch_tenant

logger = logging.getLogger("oneclicktag.ws")

router = APIRouter(tags=["websocket"])


class BatchConnectionManager:
    """Manage active WebSocket connections, keyed by batch_id."""

    def __init__(self) -> None:
        self.active_connections: dict[str, list[WebSocket]] = {}

    async def connect(self, websocket: WebSocket, batch_id: str) -> None:
        await websocket.accept()
        self.active_connections.setdefault(batch_id, []).append(websocket)

    def disconnect(self, websocket: WebSocket, batch_id: str) -> None:
        conns = self.active_connections.get(batch_id, [])
        if websocket in conns:
            conns.remove(websocket)
            if not conns:
                self.active_connections.pop(batch_id, None)

    def connection_count(self, batch_id: str) -> int:
        return len(self.active_connections.get(batch_id, []))

    async def broadcast(self, event: BatchProgressEvent) -> None:
        for connection in list(self.active_connections.get(event.batch_id, [])):
            try:
                await connection.send_json(event.to_dict())
            except Exception:
                logger.warning("Failed to send progress to a connection")


manager = BatchConnectionManager()


async def _batch_owned_by(batch_id: str, tenant_id: str) -> bool:
    async with get_session() as session:
        result = await session.execute(
            select(TrackingBatch.id).where(
                TrackingBatch.id == batch_id, TrackingBatch.tenant_id == tenant_id
            )
        )
        return result.first() is not None


@router.websocket("/ws/batches/{batch_id}")
async def batch_progress_ws(websocket: WebSocket, batch_id: str, token: str = "") -> None:
    """Stream progress events for one batch until the client disconnects.

    After the ``connected`` frame the viewer receives the batch's recent
    events, then live ones.
    """
    if not token:
        await websocket.close(code=4001, reason="Authentication required")
        return
    try:
        payload = decode_access_token(token)
    except jwt.InvalidTokenError:
        await websocket.close(code=4001, reason="Invalid or expired token")
        return

    tenant_id = payload.get("tenantId")
    if not tenant_id:
        await websocket.close(code=4001, reason="Token has no tenant")
        return

    tenant = await fetch_tenant(tenant_id)
    if tenant is None:
        await websocket.close(code=4001, reason="Unknown tenant")
        return

    ctx = TenantContext(
        tenant_id=tenant_id,
        tenant=tenant,
        user_id=payload.get("sub"),
        permissions=tuple(payload.get("permissions") or ()),
        source="jwt",
    )
    with tenant_scope(ctx):
        if not await _batch_owned_by(batch_id, tenant_id):
            await websocket.close(code=4004, reason="Batch not found")
            return

        await manager.connect(websocket, batch_id)
        broadcaster = get_broadcaster()
        # One broadcaster subscription per batch fans out to all its viewers
        if manager.connection_count(batch_id) == 1:
            broadcaster.subscribe(batch_id, manager.broadcast)
        history = broadcaster.get_recent_events(batch_id)
        try:
            await websocket.send_json({"type": "connected", "data": {"batch_id": batch_id}})
            for event in history:
                await websocket.send_json(event.to_dict())
            while True:
                # Viewers only listen; inbound frames are read to detect disconnect
                await websocket.receive_text()
        except WebSocketDisconnect:
            logger.debug("Viewer disconnected from batch %s", batch_id)
        finally:
            manager.disconnect(websocket, batch_id)
            if manager.connection_count(batch_id) == 0:
                broadcaster.unsubscribe(batch_id, manager.broadcast)
