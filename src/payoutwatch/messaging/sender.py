"""
payoutwatch/messaging/sender.py

Outbound chat messages for payout alerts.

MessageSender is the seam between the alert dispatcher and a chat
platform. Implementations post single messages; the base class splits
oversized text at the last line break before the platform limit.
"""

import logging
import uuid
from abc import ABC, abstractmethod
from functools import partial
from typing import List, Optional

import requests
import trio

from ..config import DISCORD_MESSAGE_LIMIT, DEFAULT_REQUEST_TIMEOUT
from ..errors import DeliveryFailure

logger = logging.getLogger("payoutwatch.messaging.sender")

DISCORD_API_URL = "https://discord.com/api/v10"


def split_message(text: str, limit: int = DISCORD_MESSAGE_LIMIT) -> List[str]:
    """
    Split text into chunks no longer than limit.

    Each cut is made at the last line break inside the limit (the break
    itself is dropped); a chunk with no line break is cut at the limit.
    """
    if limit <= 0:
        raise ValueError("limit must be positive")

    chunks: List[str] = []
    remaining = text
    while len(remaining) > limit:
        cut = remaining.rfind("\n", 0, limit)
        if cut == -1:
            chunks.append(remaining[:limit])
            remaining = remaining[limit:]
            continue
        if cut > 0:
            chunks.append(remaining[:cut])
        remaining = remaining[cut + 1:]
    if remaining:
        chunks.append(remaining)
    return chunks


class MessageSender(ABC):
    """
    Abstract chat message sender.

    send() and edit() return the platform's message reference for the
    first chunk, which is what later in-place edits target.
    """

    message_limit: int = DISCORD_MESSAGE_LIMIT

    @abstractmethod
    async def _post(self, destination_id: str, text: str) -> str:
        """Post one message no longer than message_limit."""
        pass

    @abstractmethod
    async def _patch(self, destination_id: str, message_ref: str, text: str) -> str:
        """Replace the content of a previously posted message."""
        pass

    def _chunks(self, text: str) -> List[str]:
        if not text.strip():
            raise DeliveryFailure("Refusing to send an empty message")
        chunks = split_message(text, self.message_limit)
        if len(chunks) > 1:
            logger.debug(f"Message length {len(text)} over {self.message_limit}, split into {len(chunks)}")
        return chunks

    async def send(self, destination_id: str, text: str) -> str:
        """
        Send text to a destination, splitting when needed.

        Raises:
            DeliveryFailure: If any chunk cannot be posted
        """
        first_ref: Optional[str] = None
        for chunk in self._chunks(text):
            ref = await self._post(destination_id, chunk)
            if first_ref is None:
                first_ref = ref
        return first_ref

    async def edit(self, destination_id: str, message_ref: str, text: str) -> str:
        """
        Edit a previously sent message in place.

        Overflow beyond the first chunk is posted as follow-up messages.

        Raises:
            DeliveryFailure: If the edit or a follow-up fails
        """
        chunks = self._chunks(text)
        ref = await self._patch(destination_id, message_ref, chunks[0])
        for chunk in chunks[1:]:
            await self._post(destination_id, chunk)
        return ref


class DiscordSender(MessageSender):
    """
    Sends messages through the Discord REST API with a bot token.

    Destination IDs are Discord channel IDs (DM channels included).
    """

    def __init__(
        self,
        token: str,
        api_url: str = DISCORD_API_URL,
        timeout: float = DEFAULT_REQUEST_TIMEOUT,
        session: Optional[requests.Session] = None,
    ):
        self.api_url = api_url.rstrip("/")
        self.timeout = timeout
        self._session = session or requests.Session()
        self._headers = {
            "Authorization": f"Bot {token}",
            "Content-Type": "application/json",
        }

    def _request(self, method: str, path: str, text: str) -> str:
        try:
            response = self._session.request(
                method,
                f"{self.api_url}{path}",
                json={"content": text},
                headers=self._headers,
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise DeliveryFailure(f"Request failed: {e}")

        if response.status_code >= 300:
            raise DeliveryFailure(f"Discord API returned {response.status_code}: {response.text[:200]}")

        try:
            return str(response.json()["id"])
        except (ValueError, KeyError) as e:
            raise DeliveryFailure(f"Unexpected Discord response: {e}")

    async def _post(self, destination_id: str, text: str) -> str:
        return await trio.to_thread.run_sync(
            partial(self._request, "POST", f"/channels/{destination_id}/messages", text),
            abandon_on_cancel=True,
        )

    async def _patch(self, destination_id: str, message_ref: str, text: str) -> str:
        return await trio.to_thread.run_sync(
            partial(self._request, "PATCH", f"/channels/{destination_id}/messages/{message_ref}", text),
            abandon_on_cancel=True,
        )


class LoggingSender(MessageSender):
    """Writes messages to the log instead of a chat platform (dry runs)."""

    def __init__(self):
        self.sent: List[tuple] = []

    async def _post(self, destination_id: str, text: str) -> str:
        ref = uuid.uuid4().hex[:16]
        self.sent.append((destination_id, ref, text))
        logger.info(f"[dry-run] -> {destination_id} ({ref}):\n{text}")
        return ref

    async def _patch(self, destination_id: str, message_ref: str, text: str) -> str:
        self.sent.append((destination_id, message_ref, text))
        logger.info(f"[dry-run] edit {destination_id}/{message_ref}:\n{text}")
        return message_ref
