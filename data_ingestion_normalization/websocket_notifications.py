"""Dataset update notifications.

Publishing is fire-and-forget: the ingest path schedules the send and returns.
Any manager exposing `send_update(room, payload)` works; SocketIOUpdateManager
emits through a python-socketio AsyncServer with one room per dataset.
"""

import asyncio
from typing import Any, Dict, List, Optional, Set, Tuple
from enum import Enum

import socketio
import structlog

from core_infrastructure.utils.helpers import get_iso8601_timestamp

logger = structlog.get_logger(__name__)


def create_socketio_server(redis_url: Optional[str] = None) -> socketio.AsyncServer:
    """
    ASGI Socket.IO server whose clients join the room of the dataset they watch
    (`?dataset_id=...` on connect). With redis_url, emits fan out across
    processes through the Redis manager.
    """
    client_manager = socketio.AsyncRedisManager(redis_url) if redis_url else None
    sio = socketio.AsyncServer(
        async_mode='asgi',
        cors_allowed_origins="*",
        client_manager=client_manager,
        logger=False,
        engineio_logger=False,
        ping_timeout=60,
        ping_interval=25
    )

    @sio.event
    async def connect(sid, environ):
        query_string = environ.get('QUERY_STRING', '')
        params = dict(param.split('=', 1) for param in query_string.split('&') if '=' in param)
        dataset_id = params.get('dataset_id')
        if not dataset_id:
            logger.warning("socketio_connection_rejected", sid=sid, reason="missing_dataset_id")
            return False
        await sio.enter_room(sid, dataset_id)
        logger.info("socketio_client_joined", sid=sid, dataset_id=dataset_id)
        return True

    return sio


class NotificationType(Enum):
    """Kinds of dataset change announced to subscribers."""
    DATASET_UPDATED = "dataset_updated"
    DATASET_DELETED = "dataset_deleted"
    FILE_REMOVED = "file_removed"


class SocketIOUpdateManager:
    """Emits dataset updates to the room named after the dataset id."""

    event_name = 'dataset-updated'

    def __init__(self, sio):
        self.sio = sio

    async def send_update(self, room: str, payload: Dict[str, Any]) -> bool:
        await self.sio.emit(self.event_name, {**payload, "dataset_id": room}, room=room)
        return True


class InMemoryUpdateManager:
    """Collects sent updates; used by tests and local runs without a socket server."""

    def __init__(self):
        self.sent: List[Tuple[str, Dict[str, Any]]] = []

    async def send_update(self, room: str, payload: Dict[str, Any]) -> bool:
        self.sent.append((room, payload))
        return True


class DatasetUpdateNotifier:
    def __init__(self, manager=None):
        self.manager = manager
        self.updates_published = 0
        self._pending: Set[asyncio.Task] = set()

    def publish(self, dataset_id: str, notification_type: NotificationType,
                data: Optional[Dict[str, Any]] = None) -> None:
        """Schedule an update for dataset_id without waiting for delivery."""
        if self.manager is None:
            logger.debug("dataset_update_skipped_no_manager", dataset_id=dataset_id)
            return

        payload = {
            "type": notification_type.value,
            "timestamp": get_iso8601_timestamp(),
        }
        if data:
            payload.update(data)

        task = asyncio.create_task(self._send(dataset_id, payload))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        self.updates_published += 1

    async def _send(self, dataset_id: str, payload: Dict[str, Any]) -> None:
        try:
            await self.manager.send_update(dataset_id, payload)
            logger.debug("dataset_update_sent", dataset_id=dataset_id, type=payload["type"])
        except Exception as e:
            logger.error("dataset_update_failed", dataset_id=dataset_id, error=str(e))

    async def drain(self) -> None:
        """Wait for scheduled sends to finish."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
