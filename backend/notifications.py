"""
Outbound round events.
Room engines emit events through a Notifier; how they reach clients
(WebSocket fan-out, logs, a message bus) is up to the notifier.
"""
import logging
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


class RoundEvent:
    """Event names emitted by room engines."""
    ROUND_CREATED = "round_created"
    BET_ACCEPTED = "bet_accepted"
    POT_UPDATED = "pot_updated"
    PHASE_CHANGED = "phase_changed"
    ROUND_RESOLVED = "round_resolved"
    ROUND_ERRORED = "round_errored"
    CLIENT_SEED_UPDATED = "client_seed_updated"


class Notifier:
    """Event sink. Subclasses deliver events; delivery failures must not reach the engine."""

    async def send(self, event: str, room_id: str, payload: Dict[str, Any]):
        raise NotImplementedError

    async def notify(self, event: str, room_id: str, payload: Dict[str, Any]) -> bool:
        """Deliver an event.

        Returns:
            True if sent successfully, False otherwise
        """
        try:
            await self.send(event, room_id, payload)
            return True
        except Exception as e:
            logger.warning(f"Failed to deliver {event} for room {room_id}: {e}")
            return False


class LoggingNotifier(Notifier):
    """Writes events to the application log."""

    async def send(self, event, room_id, payload):
        logger.info(f"[EVENT] {room_id} {event} round={payload.get('round_id')}")


class BroadcastNotifier(Notifier):
    """Fans events out to every WebSocket subscribed to the room.

    `manager` is anything with `async broadcast(room_id, message)`.
    """

    def __init__(self, manager):
        self.manager = manager

    async def send(self, event, room_id, payload):
        await self.manager.broadcast(room_id, {"event": event, "room_id": room_id, "data": payload})


class FanoutNotifier(Notifier):
    """Delivers each event to several notifiers; one failing does not stop the others."""

    def __init__(self, notifiers: Optional[List[Notifier]] = None):
        self.notifiers = list(notifiers or [])

    def add(self, notifier: Notifier):
        self.notifiers.append(notifier)

    async def send(self, event, room_id, payload):
        for notifier in self.notifiers:
            await notifier.notify(event, room_id, payload)
