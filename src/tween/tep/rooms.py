"""
Chat room collaborators.

Transfers made inside a room are only allowed between members of that room, and their progress is
announced to the room as custom events. Both needs go through the homeserver's client-server API
with the broker's own access token.

Membership checks fail closed: if the homeserver cannot be asked, the users are treated as not in
the room. Publishing is best-effort: a failure is logged and ``publish`` returns ``None``.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Set
from urllib.parse import quote

import aiohttp
from ulid import ULID

from tween.tep.ledger import Transfer

logger = logging.getLogger(__name__)

P2P_TRANSFER_EVENT = "m.tween.wallet.p2p"
P2P_STATUS_EVENT = "m.tween.wallet.p2p.status"

STATUS_VISUALS = {
    "completed": {"icon": "✓", "color": "green", "status_text": "Accepted"},
    "rejected": {"icon": "✕", "color": "red", "status_text": "Declined"},
    "expired": {"icon": "⏰", "color": "gray", "status_text": "Expired"},
}


class RoomDirectory(ABC):
    @abstractmethod
    async def user_in_room(self, user_id: str, room_id: str) -> bool:
        pass

    async def users_in_room(self, first: str, second: str, room_id: str) -> bool:
        return await self.user_in_room(first, room_id) and await self.user_in_room(second, room_id)

    @abstractmethod
    async def room_members(self, room_id: str) -> Set[str]:
        """Joined members of a room; empty when the room is unknown or cannot be read."""


class EventPublisher(ABC):
    @abstractmethod
    async def publish(self, room_id: str, event_type: str, content: Dict[str, Any]) -> Optional[str]:
        """Send an event to a room and return its event id, or ``None`` when it was not sent."""


class HomeserverClient(RoomDirectory, EventPublisher):
    def __init__(
        self,
        http_session: aiohttp.ClientSession,
        base_url: str,
        access_token: str,
        timeout: float = 30,
    ) -> None:
        self.http_session = http_session
        self.base_url = base_url.rstrip("/")
        self._access_token = access_token
        self.timeout = aiohttp.ClientTimeout(total=timeout)

    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self._access_token}"}

    async def joined_members(self, room_id: str) -> Set[str]:
        url = f"{self.base_url}/_matrix/client/v3/rooms/{quote(room_id, safe='')}/joined_members"
        async with self.http_session.get(url, headers=self._headers(), timeout=self.timeout) as resp:
            if resp.status != 200:
                logger.warning("Joined members lookup for %s returned HTTP %d", room_id, resp.status)
                return set()
            body = await resp.json()
        joined = body.get("joined") if isinstance(body, dict) else None
        return set(joined) if isinstance(joined, dict) else set()

    async def user_in_room(self, user_id: str, room_id: str) -> bool:
        try:
            return user_id in await self.joined_members(room_id)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            logger.warning("Membership check for %s in %s failed: %s", user_id, room_id, e)
            return False

    async def users_in_room(self, first: str, second: str, room_id: str) -> bool:
        try:
            members = await self.joined_members(room_id)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            logger.warning("Membership check in %s failed: %s", room_id, e)
            return False
        return first in members and second in members

    async def room_members(self, room_id: str) -> Set[str]:
        try:
            return await self.joined_members(room_id)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            logger.warning("Member listing for %s failed: %s", room_id, e)
            return set()

    async def publish(self, room_id: str, event_type: str, content: Dict[str, Any]) -> Optional[str]:
        url = (
            f"{self.base_url}/_matrix/client/v3/rooms/{quote(room_id, safe='')}"
            f"/send/{quote(event_type, safe='')}/{ULID()}"
        )
        try:
            async with self.http_session.put(
                url, json=content, headers=self._headers(), timeout=self.timeout
            ) as resp:
                if resp.status != 200:
                    logger.error("Publishing %s to %s returned HTTP %d", event_type, room_id, resp.status)
                    return None
                body = await resp.json()
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            logger.error("Publishing %s to %s failed: %s", event_type, room_id, e)
            return None

        event_id = body.get("event_id") if isinstance(body, dict) else None
        logger.info("Published %s to %s as %s", event_type, room_id, event_id)
        return event_id


def p2p_transfer_content(transfer: Transfer, sender: str, recipient: str) -> Dict[str, Any]:
    return {
        "msgtype": "m.tween.money",
        "body": f"Sent {transfer.amount} {transfer.currency}",
        "transfer_id": transfer.transfer_id,
        "amount": str(transfer.amount) if transfer.amount is not None else None,
        "currency": transfer.currency,
        "note": transfer.note,
        "sender": {"user_id": sender},
        "recipient": {"user_id": recipient},
        "status": transfer.status,
        "recipient_acceptance_required": bool(transfer.recipient_acceptance_required),
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


def p2p_status_content(transfer_id: str, status: str, **details: Any) -> Dict[str, Any]:
    content = {
        "transfer_id": transfer_id,
        "status": status,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "visual": STATUS_VISUALS.get(
            status, {"icon": "⏳", "color": "yellow", "status_text": status}
        ),
    }
    content.update(details)
    return content
