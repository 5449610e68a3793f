"""Broadcast channels for scoring progress events.

Publishing is fire-and-forget: a channel that cannot deliver logs the
failure and drops the event. Consumers recover full state from the store.
"""

from __future__ import annotations

import logging
from typing import Optional

import httpx

from .core.models import EventKind, ScoringEvent

logger = logging.getLogger(__name__)


class InMemoryBroadcaster:
    """Keeps every published event, in order."""

    def __init__(self):
        self.events: list[ScoringEvent] = []

    async def publish(self, event: ScoringEvent) -> None:
        self.events.append(event)

    def kinds(self) -> list[EventKind]:
        return [e.kind for e in self.events]


class LoggingBroadcaster:
    async def publish(self, event: ScoringEvent) -> None:
        logger.info(
            "[%s #%d] %s %s %s",
            event.run_id, event.sequence, event.kind.value, event.period, _subject(event),
        )


class WebhookBroadcaster:
    """POSTs each event as JSON to a webhook URL."""

    def __init__(self, url: str, timeout: float = 10.0, client: Optional[httpx.AsyncClient] = None):
        self.url = url
        self._timeout = httpx.Timeout(timeout, connect=5.0)
        self._client = client

    async def publish(self, event: ScoringEvent) -> None:
        body = event.model_dump(mode="json")
        try:
            if self._client is not None:
                response = await self._client.post(self.url, json=body)
                response.raise_for_status()
                return
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.post(self.url, json=body)
                response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning("Webhook delivery of %s #%d failed: %s", event.kind.value, event.sequence, exc)


class FanoutBroadcaster:
    """Publishes to several channels; one failing channel does not block the rest."""

    def __init__(self, channels: list):
        self.channels = channels

    async def publish(self, event: ScoringEvent) -> None:
        for channel in self.channels:
            try:
                await channel.publish(event)
            except Exception as exc:
                logger.warning("Channel %s dropped %s: %s", type(channel).__name__, event.kind.value, exc)


def _subject(event: ScoringEvent) -> str:
    payload = event.payload
    if event.kind == EventKind.ENTITY_SCORED:
        return f"{payload.get('entity_type')}:{payload.get('entity_id')} = {payload.get('total_points')}"
    if event.kind == EventKind.TEAM_SCORED:
        return f"team:{payload.get('team_id')} = {payload.get('total_points')}"
    return payload.get("summary", "")
