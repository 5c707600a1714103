"""
Event Subscriber — fan-out of published events to registered handlers.

Delivery is best-effort and in-process: the broker hands every raw message
received on a channel to deliver(), which parses it once and invokes each
handler registered for that channel. A failing handler is logged and skipped;
it never prevents the remaining handlers from seeing the event.
"""
from __future__ import annotations

import inspect
import json
import structlog
from collections import defaultdict
from typing import Any, Callable

logger = structlog.get_logger()

EventHandler = Callable[[dict[str, Any]], Any]


class EventSubscriber:
    """Channel → handlers registry with isolated, ordered delivery."""

    def __init__(self):
        self._handlers: dict[str, list[EventHandler]] = defaultdict(list)

    def register(self, channel: str, handler: EventHandler) -> bool:
        """Add a handler. Returns True when it is the first one on the channel."""
        first = not self._handlers[channel]
        self._handlers[channel].append(handler)
        logger.info("event_handler_registered",
                    channel=channel,
                    handler=getattr(handler, "__qualname__", repr(handler)))
        return first

    def channels(self) -> list[str]:
        return [name for name, handlers in self._handlers.items() if handlers]

    def handlers(self, channel: str) -> list[EventHandler]:
        return list(self._handlers.get(channel, []))

    @staticmethod
    def parse(raw: Any) -> dict[str, Any]:
        """Decode a raw channel message; malformed input becomes an error-shaped payload."""
        if isinstance(raw, dict):
            return raw
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8", errors="replace")
        try:
            parsed = json.loads(raw)
        except (TypeError, ValueError):
            return {"error": "Invalid message format", "raw": raw}
        if not isinstance(parsed, dict):
            return {"error": "Invalid message format", "raw": raw}
        return parsed

    async def deliver(self, channel: str, raw: Any) -> int:
        """Invoke every handler on `channel`. Returns how many completed without error."""
        handlers = self.handlers(channel)
        if not handlers:
            return 0

        event = self.parse(raw)
        if "error" in event and "raw" in event:
            logger.warning("event_payload_malformed", channel=channel)

        delivered = 0
        for handler in handlers:
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    await result
                delivered += 1
            except Exception as e:
                logger.error("event_handler_error",
                             channel=channel,
                             event_type=event.get("type"),
                             handler=getattr(handler, "__qualname__", repr(handler)),
                             error=str(e),
                             exc_info=True)
        return delivered
