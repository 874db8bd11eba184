"""Nostr Relay websocket client used for nutzaps, descriptors and backups."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Protocol, runtime_checkable
from uuid import uuid4

import websockets
from websockets.exceptions import WebSocketException

from .types import NostrEvent, NostrFilter, RelayError

logger = logging.getLogger(__name__)


@runtime_checkable
class BroadcastNetwork(Protocol):
    """What the wallet needs from the Nostr network."""

    async def publish(self, event: NostrEvent) -> bool:
        """Return True if at least one relay accepted the event."""
        ...

    async def query(
        self, filters: list[NostrFilter], timeout: float = 5.0
    ) -> list[NostrEvent]: ...


# ──────────────────────────────────────────────────────────────────────────────
# Relay client
# ──────────────────────────────────────────────────────────────────────────────


class NostrRelay:
    """Minimal Nostr relay client."""

    def __init__(self, url: str, *, timeout: float = 5.0) -> None:
        """Initialize relay client.

        Args:
            url: Relay websocket URL (e.g. "wss://relay.damus.io")
            timeout: Connect timeout and default wait for OK / EOSE
        """
        self.url = url
        self.timeout = timeout
        self.ws: Any = None
        # One outstanding request per socket; recv() is not shareable.
        self._lock = asyncio.Lock()

    @property
    def connected(self) -> bool:
        return self.ws is not None and self.ws.close_code is None

    async def connect(self) -> None:
        """Connect to the relay."""
        if self.connected:
            return
        try:
            async with asyncio.timeout(self.timeout):
                self.ws = await websockets.connect(
                    self.url, ping_interval=20, ping_timeout=10, close_timeout=10
                )
        except TimeoutError as e:
            logger.warning("Timeout connecting to relay %s", self.url)
            raise RelayError(f"Connection timeout: {self.url}") from e
        except (OSError, WebSocketException) as e:
            logger.warning("Failed to connect to relay %s: %s", self.url, e)
            raise RelayError(f"Connection failed: {e}") from e

    async def disconnect(self) -> None:
        """Disconnect from the relay."""
        if self.connected:
            await self.ws.close()
        self.ws = None

    async def _send(self, message: list[Any]) -> None:
        if not self.connected:
            raise RelayError("Not connected to relay")
        await self.ws.send(json.dumps(message))

    async def _recv(self) -> list[Any]:
        if not self.connected:
            raise RelayError("Not connected to relay")
        data = await self.ws.recv()
        try:
            msg = json.loads(data)
        except ValueError as e:
            raise RelayError(f"Relay sent invalid JSON: {e}") from e
        if not isinstance(msg, list) or not msg:
            raise RelayError("Relay sent unexpected message")
        return msg

    # ───────────────────────── Publishing Events ─────────────────────────────────

    async def publish_event(self, event: NostrEvent, *, timeout: float = 10.0) -> bool:
        """Publish an event to the relay.

        Returns True if accepted, False if rejected or no OK arrived in time.

        Raises:
            RelayError: The relay could not be reached
        """
        async with self._lock:
            await self.connect()
            try:
                await self._send(["EVENT", event])
                async with asyncio.timeout(timeout):
                    while True:
                        msg = await self._recv()
                        if msg[0] == "OK" and len(msg) > 2 and msg[1] == event["id"]:
                            if not msg[2]:
                                reason = msg[3] if len(msg) > 3 else ""
                                logger.info("Relay %s rejected event: %s", self.url, reason)
                            return bool(msg[2])
                        elif msg[0] == "NOTICE":
                            logger.info("Relay notice from %s: %s", self.url, msg[1:])
            except TimeoutError:
                logger.warning("Timeout waiting for OK response from %s", self.url)
                return False
            except WebSocketException as e:
                self.ws = None
                raise RelayError(f"Connection lost: {e}") from e

    # ───────────────────────── Fetching Events ─────────────────────────────────

    async def fetch_events(
        self,
        filters: list[NostrFilter],
        *,
        timeout: float | None = None,
    ) -> list[NostrEvent]:
        """Fetch stored events matching filters.

        Args:
            filters: List of filters to match events
            timeout: Time to wait for EOSE before returning what arrived

        Returns:
            List of matching events
        """
        timeout = self.timeout if timeout is None else timeout
        async with self._lock:
            await self.connect()
            sub_id = str(uuid4())
            events: list[NostrEvent] = []
            try:
                await self._send(["REQ", sub_id, *filters])
                async with asyncio.timeout(timeout):
                    while True:
                        msg = await self._recv()
                        if msg[0] == "EVENT" and len(msg) > 2 and msg[1] == sub_id:
                            events.append(msg[2])
                        elif msg[0] == "EOSE" and len(msg) > 1 and msg[1] == sub_id:
                            break
                        elif msg[0] == "CLOSED" and len(msg) > 1 and msg[1] == sub_id:
                            logger.info("Relay %s closed subscription: %s", self.url, msg[2:])
                            return events
                        elif msg[0] == "NOTICE":
                            logger.info("Relay notice from %s: %s", self.url, msg[1:])
            except TimeoutError:
                logger.debug("No EOSE from %s within %.1fs", self.url, timeout)
            except WebSocketException as e:
                self.ws = None
                raise RelayError(f"Connection lost: {e}") from e

            try:
                await self._send(["CLOSE", sub_id])
            except (RelayError, WebSocketException):
                self.ws = None
            return events


class RelayPool:
    """Fan-out over several relays, implementing ``BroadcastNetwork``."""

    def __init__(self, urls: list[str], *, timeout: float = 5.0) -> None:
        self.relays = [NostrRelay(url, timeout=timeout) for url in dict.fromkeys(urls)]
        self.timeout = timeout

    async def publish(self, event: NostrEvent) -> bool:
        """Publish event to all relays; True if at least one accepted it.

        Raises:
            RelayError: No relay could be reached at all
        """
        if not self.relays:
            raise RelayError("No relays configured")
        results = await asyncio.gather(
            *(relay.publish_event(event) for relay in self.relays),
            return_exceptions=True,
        )
        accepted = [r for r in results if r is True]
        errors = [r for r in results if isinstance(r, BaseException)]
        for error in errors:
            if not isinstance(error, RelayError):
                raise error
        if len(errors) == len(self.relays):
            raise RelayError(f"No relay reachable: {errors[0]}")
        logger.debug(
            "Event %s accepted by %d/%d relays",
            event["id"][:8],
            len(accepted),
            len(self.relays),
        )
        return bool(accepted)

    async def query(
        self, filters: list[NostrFilter], timeout: float = 5.0
    ) -> list[NostrEvent]:
        """Query all relays concurrently and merge the results by event id.

        Raises:
            RelayError: No relay could be reached at all
        """
        if not self.relays:
            raise RelayError("No relays configured")
        results = await asyncio.gather(
            *(relay.fetch_events(filters, timeout=timeout) for relay in self.relays),
            return_exceptions=True,
        )
        merged: dict[str, NostrEvent] = {}
        failures = 0
        for relay, result in zip(self.relays, results):
            if isinstance(result, RelayError):
                failures += 1
                logger.info("Relay %s failed query: %s", relay.url, result)
                continue
            if isinstance(result, BaseException):
                raise result
            for event in result:
                if isinstance(event, dict) and isinstance(event.get("id"), str):
                    merged.setdefault(event["id"], event)
        if failures == len(self.relays):
            raise RelayError("No relay reachable")
        return list(merged.values())

    async def aclose(self) -> None:
        """Disconnect all relays."""
        for relay in self.relays:
            await relay.disconnect()
