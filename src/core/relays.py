"""
Relay network client.

Thin layer over nostr_tools.Client giving the DVM three operations against a
set of relays:
- subscribe(): follow filters on every relay, deliver each new event once
- publish(): send a signed event to every relay, succeed if any accepts it
- list(): one-shot query, merged across relays, newest first

Subscriptions poll: each relay task subscribes, drains stored events until
EOSE, unsubscribes, sleeps, then resumes from the newest timestamp it saw.
Events are deduplicated by id across relays and dropped when their id or
signature does not verify.

Relays only index single-letter tags, so tag filters ("#e", "#status", ...)
are always applied locally as well; only ids/authors/kinds/since/until/limit
are sent to relays.

Usage:
    network = RelayNetwork(relays=["wss://relay.damus.io"])

    events = await network.list([{"kinds": [6050], "authors": [pubkey], "limit": 50}])
    await network.publish(signed_event)

    sub = await network.subscribe([{"kinds": [5050], "since": since}], on_event)
    ...
    await sub.close()
"""

from __future__ import annotations

import asyncio
from collections import OrderedDict
from typing import Any, Callable, Iterable, Optional, Protocol

from nostr_tools import Client, Event, Filter, Relay, RelayValidationError
from pydantic import BaseModel, Field

from .errors import DVMConnectionError
from .events import verify_event
from .logger import Logger

EventCallback = Callable[[dict[str, Any]], None]
EoseCallback = Callable[[str], None]

RELAY_FILTER_KEYS = ("ids", "authors", "kinds", "since", "until", "limit")


# =============================================================================
# Configuration
# =============================================================================


class TorConfig(BaseModel):
    """Tor proxy configuration."""

    enabled: bool = Field(default=True, description="Enable Tor proxy for .onion relays")
    host: str = Field(default="127.0.0.1", description="Tor proxy host")
    port: int = Field(default=9050, ge=1, le=65535, description="Tor proxy port")


class RelayNetworkConfig(BaseModel):
    """Relay client configuration."""

    timeout: float = Field(default=15.0, ge=1.0, le=120.0, description="Relay request timeout")
    poll_interval: float = Field(
        default=5.0, ge=0.1, le=300.0, description="Seconds between subscription polls"
    )
    reconnect_delay: float = Field(
        default=10.0, ge=0.1, le=600.0, description="Delay before reconnecting a failed relay"
    )
    dedup_window: int = Field(
        default=10000, ge=100, description="Event ids remembered per subscription"
    )
    tor: TorConfig = Field(default_factory=TorConfig)


# =============================================================================
# Protocol
# =============================================================================


class EventNetwork(Protocol):
    """Publish/subscribe access to the event network."""

    async def subscribe(
        self,
        filters: list[dict[str, Any]],
        on_event: EventCallback,
        relays: Optional[list[str]] = None,
        on_eose: Optional[EoseCallback] = None,
    ) -> "Subscription": ...

    async def publish(self, event: dict[str, Any], relays: Optional[list[str]] = None) -> None: ...

    async def list(
        self, filters: list[dict[str, Any]], relays: Optional[list[str]] = None
    ) -> list[dict[str, Any]]: ...


# =============================================================================
# Filter helpers
# =============================================================================


def to_relay_filter(filter_dict: dict[str, Any]) -> Filter:
    """Build the nostr_tools Filter sent to relays (tag filters stripped)."""
    kwargs = {k: v for k, v in filter_dict.items() if k in RELAY_FILTER_KEYS and v is not None}
    return Filter(**kwargs)


def matches_filter(event: dict[str, Any], filter_dict: dict[str, Any]) -> bool:
    """Check an event against a NIP-01 filter dict, including "#x" tag filters."""
    if "ids" in filter_dict and event.get("id") not in filter_dict["ids"]:
        return False
    if "authors" in filter_dict and event.get("pubkey") not in filter_dict["authors"]:
        return False
    if "kinds" in filter_dict and event.get("kind") not in filter_dict["kinds"]:
        return False
    created_at = event.get("created_at", 0)
    if filter_dict.get("since") is not None and created_at < filter_dict["since"]:
        return False
    if filter_dict.get("until") is not None and created_at > filter_dict["until"]:
        return False

    for key, wanted in filter_dict.items():
        if not key.startswith("#"):
            continue
        name = key[1:]
        values = {tag[1] for tag in event.get("tags", []) if len(tag) > 1 and tag[0] == name}
        if not values.intersection(wanted):
            return False
    return True


def sort_newest_first(events: Iterable[dict[str, Any]]) -> list[dict[str, Any]]:
    return sorted(events, key=lambda e: (e.get("created_at", 0), e.get("id", "")), reverse=True)


class SeenIds:
    """Bounded set of event ids, oldest evicted first."""

    def __init__(self, size: int) -> None:
        self._size = size
        self._ids: OrderedDict[str, None] = OrderedDict()

    def __contains__(self, event_id: object) -> bool:
        return event_id in self._ids

    def __len__(self) -> int:
        return len(self._ids)

    def add(self, event_id: str) -> bool:
        """Remember an id; False if it was already known."""
        if event_id in self._ids:
            return False
        self._ids[event_id] = None
        if len(self._ids) > self._size:
            self._ids.popitem(last=False)
        return True


# =============================================================================
# Subscription
# =============================================================================


class Subscription:
    """Handle for a running subscription; close() stops every relay task."""

    def __init__(self, tasks: list[asyncio.Task[None]], relays: list[str]) -> None:
        self._tasks = tasks
        self.relays = relays

    @property
    def active(self) -> bool:
        return any(not task.done() for task in self._tasks)

    async def close(self) -> None:
        """Cancel relay tasks and wait until none can deliver another event."""
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)


# =============================================================================
# Client
# =============================================================================


class RelayNetwork:
    """EventNetwork implementation on top of nostr_tools relay clients."""

    def __init__(
        self,
        relays: Optional[list[str]] = None,
        config: Optional[RelayNetworkConfig] = None,
    ) -> None:
        self._relays = list(relays or [])
        self._config = config or RelayNetworkConfig()
        self._logger = Logger("relays")

    @property
    def config(self) -> RelayNetworkConfig:
        return self._config

    def _resolve_relays(self, relays: Optional[list[str]]) -> list[Relay]:
        resolved: dict[str, Relay] = {}
        for url in relays or self._relays:
            try:
                relay = Relay(url)
                resolved[relay.url] = relay
            except RelayValidationError:
                self._logger.debug("invalid_relay_url", url=url)
        if not resolved:
            raise DVMConnectionError("No valid relays configured")
        return list(resolved.values())

    def _client(self, relay: Relay) -> Client:
        socks5_proxy = None
        if relay.network == "tor" and self._config.tor.enabled:
            socks5_proxy = f"socks5://{self._config.tor.host}:{self._config.tor.port}"
        return Client(
            relay=relay,
            timeout=int(self._config.timeout),
            socks5_proxy_url=socks5_proxy,
        )

    async def _drain(self, client: Client, filter_dict: dict[str, Any]) -> list[dict[str, Any]]:
        """Fetch stored events for one filter until EOSE."""
        events: list[dict[str, Any]] = []
        sub_id = await client.subscribe(to_relay_filter(filter_dict))
        async for msg in client.listen_events(sub_id):
            if len(msg) >= 3 and isinstance(msg[2], dict):
                events.append(msg[2])
        await client.unsubscribe(sub_id)
        return events

    # -------------------------------------------------------------------------
    # list
    # -------------------------------------------------------------------------

    async def list(
        self, filters: list[dict[str, Any]], relays: Optional[list[str]] = None
    ) -> list[dict[str, Any]]:
        """
        Query every relay once and merge the answers.

        Each filter's ``limit`` bounds the merged result for that filter.

        Raises:
            DVMConnectionError: if no relay could be queried
        """
        targets = self._resolve_relays(relays)

        async def query(relay: Relay) -> list[list[dict[str, Any]]]:
            client = self._client(relay)
            async with client:
                return [await self._drain(client, f) for f in filters]

        results = await asyncio.gather(*(query(r) for r in targets), return_exceptions=True)

        per_filter: list[dict[str, dict[str, Any]]] = [{} for _ in filters]
        answered = 0
        for relay, result in zip(targets, results):
            if isinstance(result, BaseException):
                self._logger.warning("relay_query_failed", relay=relay.url, error=str(result))
                continue
            answered += 1
            for index, events in enumerate(result):
                for event in events:
                    if event.get("id") and matches_filter(event, filters[index]):
                        per_filter[index].setdefault(event["id"], event)

        if answered == 0:
            raise DVMConnectionError("Failed to query any relay", context={"relays": len(targets)})

        merged: dict[str, dict[str, Any]] = {}
        for index, events_by_id in enumerate(per_filter):
            ordered = sort_newest_first(events_by_id.values())
            limit = filters[index].get("limit")
            if limit is not None:
                ordered = ordered[:limit]
            for event in ordered:
                merged.setdefault(event["id"], event)

        self._logger.debug("relay_query_completed", relays=answered, events=len(merged))
        return sort_newest_first(merged.values())

    # -------------------------------------------------------------------------
    # publish
    # -------------------------------------------------------------------------

    async def publish(self, event: dict[str, Any], relays: Optional[list[str]] = None) -> None:
        """
        Publish a signed event to every relay.

        Raises:
            DVMConnectionError: if no relay accepted the event
        """
        targets = self._resolve_relays(relays)
        nostr_event = Event.from_dict(event)

        # Client.publish returns None on success and raises when the relay rejects
        async def send(relay: Relay) -> bool:
            client = self._client(relay)
            async with client:
                await client.publish(nostr_event)
            return True

        results = await asyncio.gather(*(send(r) for r in targets), return_exceptions=True)

        accepted = 0
        for relay, result in zip(targets, results):
            if result is True:
                accepted += 1
            else:
                error = str(result) if isinstance(result, BaseException) else "rejected"
                self._logger.debug("relay_publish_failed", relay=relay.url, error=error)

        if accepted == 0:
            raise DVMConnectionError(
                "Failed to publish event to any relay",
                context={"event_id": event.get("id"), "relays": len(targets)},
            )
        self._logger.debug(
            "event_published", event_id=event.get("id"), kind=event.get("kind"), accepted=accepted
        )

    # -------------------------------------------------------------------------
    # subscribe
    # -------------------------------------------------------------------------

    async def subscribe(
        self,
        filters: list[dict[str, Any]],
        on_event: EventCallback,
        relays: Optional[list[str]] = None,
        on_eose: Optional[EoseCallback] = None,
    ) -> Subscription:
        """
        Follow ``filters`` on every relay.

        ``on_event`` runs on the event loop and must return quickly; each
        event id is delivered at most once per subscription.

        Raises:
            DVMConnectionError: if no valid relay is configured
        """
        targets = self._resolve_relays(relays)
        seen = SeenIds(self._config.dedup_window)

        def dispatch(event: dict[str, Any]) -> None:
            event_id = event.get("id")
            if not event_id or not any(matches_filter(event, f) for f in filters):
                return
            if not verify_event(event):
                self._logger.debug("invalid_event_dropped", event_id=event_id)
                return
            if not seen.add(event_id):
                return
            try:
                on_event(event)
            except Exception as e:
                self._logger.error("event_handler_failed", event_id=event_id, error=str(e))

        tasks = [
            asyncio.create_task(self._follow(relay, filters, dispatch, on_eose))
            for relay in targets
        ]
        self._logger.info(
            "subscription_started", relays=len(targets), filters=len(filters)
        )
        return Subscription(tasks, [relay.url for relay in targets])

    async def _follow(
        self,
        relay: Relay,
        filters: list[dict[str, Any]],
        dispatch: EventCallback,
        on_eose: Optional[EoseCallback],
    ) -> None:
        cursors: list[Optional[int]] = [f.get("since") for f in filters]
        eose_sent = False

        while True:
            try:
                client = self._client(relay)
                async with client:
                    while True:
                        for index, filter_dict in enumerate(filters):
                            current = {**filter_dict, "since": cursors[index]}
                            for event in await self._drain(client, current):
                                created_at = event.get("created_at")
                                if isinstance(created_at, int):
                                    cursors[index] = max(cursors[index] or 0, created_at)
                                dispatch(event)

                        if not eose_sent and on_eose is not None:
                            eose_sent = True
                            on_eose(relay.url)

                        await asyncio.sleep(self._config.poll_interval)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._logger.warning(
                    "relay_subscription_error",
                    relay=relay.url,
                    error=str(e),
                    retry_in=self._config.reconnect_delay,
                )
                await asyncio.sleep(self._config.reconnect_delay)
