"""Push gateways the fan-out delivers through."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Callable

from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session

from sosdispatch.core.errors import TransientStorageError
from sosdispatch.core.ws_manager import TOPIC_PREFIX, ConnectionManager
from sosdispatch.models.enums import NotificationKind
from sosdispatch.models.notification import Notification

logger = logging.getLogger(__name__)


class InboxGateway:
    """Stores one inbox row per delivered event.

    ``event_id`` is unique, so a redelivered event is recognised and
    ignored. Topic targets have no inbox and are skipped.
    """

    name = "inbox"

    def __init__(self, session_factory: Callable[[], Session]) -> None:
        self.session_factory = session_factory

    def notify(self, target_id: str, message: dict[str, Any]) -> None:
        if target_id.startswith(TOPIC_PREFIX):
            return
        db = self.session_factory()
        try:
            db.add(
                Notification(
                    event_id=message["event_id"],
                    alert_id=message["alert_id"],
                    target_id=target_id,
                    kind=NotificationKind(message["kind"]),
                    payload=message["data"],
                    alert_version=message["alert_version"],
                    created_at=datetime.now(timezone.utc),
                )
            )
            db.commit()
        except IntegrityError:
            db.rollback()
            logger.debug("Event %s already in inbox of %s", message["event_id"], target_id)
        except OperationalError as exc:
            db.rollback()
            raise TransientStorageError(f"Inbox write for {target_id} failed: {exc}") from exc
        finally:
            db.close()


class WebSocketGateway:
    """Pushes events to connected sockets of a principal or topic."""

    name = "websocket"

    def __init__(self, manager: ConnectionManager, timeout: float = 5.0) -> None:
        self.manager = manager
        self.timeout = timeout

    def notify(self, target_id: str, message: dict[str, Any]) -> None:
        reached = self.manager.send_threadsafe(target_id, message, timeout=self.timeout)
        if reached:
            logger.debug("Pushed %s to %s (%s principals)", message["event_id"], target_id, reached)
