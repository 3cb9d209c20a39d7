"""
Matrix client-server API transport built on httpx.
Handles login, room joins, per-room filtered sync streams, sending and redaction.
"""
import json
import logging
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional, Tuple
from urllib.parse import quote

import httpx

from fourwarder.core.errors import TransportPermanent, TransportTransient
from fourwarder.core.events import MessageRef, RawEvent, RawEventKind, ResumePosition
from fourwarder.core.retry import RetryPolicy

logger = logging.getLogger(__name__)

API_PREFIX = "/_matrix/client/v3"
DEVICE_DISPLAY_NAME = "4warder_bot"
TIMELINE_LIMIT = 50


def _room_filter(room_id: str) -> str:
    """Sync filter that only returns the timeline of one room."""
    return json.dumps({
        "presence": {"types": []},
        "account_data": {"types": []},
        "room": {
            "rooms": [room_id],
            "timeline": {"limit": TIMELINE_LIMIT},
            "state": {"types": []},
            "ephemeral": {"types": []},
            "account_data": {"types": []},
        },
    }, separators=(",", ":"))


def _resume_index(items: List[Tuple[RawEventKind, Dict[str, Any]]],
                  resume: ResumePosition, limited: bool) -> int:
    """Index of the first item not yet processed when resuming at `resume`."""
    if resume.event_id is not None:
        for index, (kind, payload) in enumerate(items):
            if kind is RawEventKind.EVENT and payload.get("event_id") == resume.event_id:
                return index + 1
        return 0
    # a refetched window that was cut short no longer starts where the first one did
    return 0 if limited else resume.offset


class MatrixClient:
    """Manages one Matrix account session and implements the relay transport."""

    def __init__(self, homeserver: str, username: str, password: str,
                 device_id: str = "FOURWARDER", sync_timeout_ms: int = 30000,
                 request_timeout: float = 60.0,
                 reconnect_policy: Optional[RetryPolicy] = None,
                 http_client: Optional[httpx.AsyncClient] = None):
        self.homeserver = homeserver.rstrip("/")
        self.username = username
        self._password = password
        self.device_id = device_id
        self.sync_timeout_ms = sync_timeout_ms
        self.reconnect_policy = reconnect_policy or RetryPolicy(max_attempts=10, base_delay=1.0, max_delay=60.0)
        self.client = http_client or httpx.AsyncClient(base_url=self.homeserver, timeout=request_timeout)
        self.user_id: Optional[str] = None
        self._access_token: Optional[str] = None
        self._is_running = False

    async def start(self, room_ids: Iterable[str] = ()) -> None:
        """Log in and join the configured rooms."""
        logger.info(f"Logging into {self.homeserver} as {self.username}...")
        await self.login()
        for room_id in room_ids:
            await self.join(room_id)
        self._is_running = True
        logger.info(f"Matrix client started as {self.user_id}")

    async def stop(self) -> None:
        """Close the HTTP session. The device stays registered so transaction ids keep deduplicating."""
        if self._is_running:
            logger.info("Stopping Matrix client...")
        await self.client.aclose()
        self._is_running = False

    async def login(self) -> None:
        data = await self._request("POST", "/login", json={
            "type": "m.login.password",
            "identifier": {"type": "m.id.user", "user": self.username},
            "password": self._password,
            "device_id": self.device_id,
            "initial_device_display_name": DEVICE_DISPLAY_NAME,
        }, authenticated=False)
        self._access_token = data["access_token"]
        self.user_id = data["user_id"]

    async def join(self, room_id: str) -> None:
        """Join a room; already being a member is fine."""
        try:
            await self._request("POST", f"/join/{quote(room_id, safe='')}", json={})
            logger.info(f"Joined room {room_id}")
        except TransportPermanent as e:
            logger.warning(f"Could not join room {room_id}: {e}")

    async def post_message(self, room_id: str, content: Dict[str, Any], txn_id: str) -> MessageRef:
        path = (f"/rooms/{quote(room_id, safe='')}/send/m.room.message/"
                f"{quote(txn_id, safe='')}")
        data = await self._request("PUT", path, json=content)
        return MessageRef(room_id, data["event_id"])

    async def redact(self, ref: MessageRef, reason: Optional[str], txn_id: str) -> None:
        path = (f"/rooms/{quote(ref.room_id, safe='')}/redact/{quote(ref.event_id, safe='')}/"
                f"{quote(txn_id, safe='')}")
        body = {"reason": reason} if reason else {}
        await self._request("PUT", path, json=body)

    async def sync(self, room_id: str, since: Optional[str], timeout_ms: int) -> Dict[str, Any]:
        params = {"filter": _room_filter(room_id), "timeout": str(timeout_ms)}
        if since:
            params["since"] = since
        return await self._request("GET", "/sync", params=params)

    async def stream(self, room_id: str, since: Optional[ResumePosition]) -> AsyncIterator[RawEvent]:
        """Yield the room timeline in order, resuming after `since`.

        Each sync response is one batch. Items of batch b fetched with token S
        get positions (b, 1..n, S); a checkpoint (b + 1, 0, next_batch) closes
        the batch. Resuming from (b, k, S) refetches from S and continues after
        the event recorded in the position, numbering from k + 1. When that
        event is no longer in the returned window, the whole window is
        replayed, gap marker included.
        Without a position, the stream starts at the current end of the room.
        """
        if since is None or since.since is None:
            data = await self._sync_with_reconnect(room_id, None, 0)
            since = ResumePosition(1, 0, data["next_batch"])
            yield RawEvent(room_id, since, RawEventKind.CHECKPOINT)

        batch, token = since.batch, since.since
        resume = since if since.offset else None
        while True:
            data = await self._sync_with_reconnect(room_id, token, self.sync_timeout_ms)
            timeline = data.get("rooms", {}).get("join", {}).get(room_id, {}).get("timeline", {})
            limited = bool(timeline.get("limited"))

            items: List[Tuple[RawEventKind, Dict[str, Any]]] = []
            if limited:
                items.append((RawEventKind.GAP, {}))
            items.extend((RawEventKind.EVENT, event) for event in timeline.get("events", []))

            offset = 0
            if resume is not None:
                start = _resume_index(items, resume, limited)
                if start == 0:
                    logger.warning(f"Resume point of {room_id} not in refetched window, replaying {len(items)} items")
                items = items[start:]
                offset, resume = resume.offset, None

            for kind, payload in items:
                offset += 1
                event_id = payload.get("event_id") if kind is RawEventKind.EVENT else None
                position = ResumePosition(
                    batch, offset, token, event_id if isinstance(event_id, str) else None
                )
                yield RawEvent(room_id, position, kind, payload)

            batch, token = batch + 1, data["next_batch"]
            yield RawEvent(room_id, ResumePosition(batch, 0, token), RawEventKind.CHECKPOINT)

    async def _sync_with_reconnect(self, room_id: str, since: Optional[str], timeout_ms: int) -> Dict[str, Any]:
        """Sync, waiting out network trouble for as long as it lasts."""
        attempt = 0
        while True:
            try:
                return await self.sync(room_id, since, timeout_ms)
            except TransportTransient as e:
                attempt += 1
                delay = self.reconnect_policy.delay_for(attempt, e.retry_after)
                logger.warning(f"Sync for {room_id} failed, reconnecting in {delay:.1f}s: {e}")
                await self.reconnect_policy.sleep(delay)

    async def _request(self, method: str, path: str, *, authenticated: bool = True,
                       **kwargs) -> Dict[str, Any]:
        headers = {}
        if authenticated:
            if not self._access_token:
                raise TransportPermanent("not logged in")
            headers["Authorization"] = f"Bearer {self._access_token}"

        try:
            response = await self.client.request(method, API_PREFIX + path, headers=headers, **kwargs)
        except httpx.TransportError as e:
            raise TransportTransient(f"{method} {path}: {e.__class__.__name__}: {e}") from e

        if response.status_code < 400:
            return response.json()

        try:
            body = response.json()
        except ValueError:
            body = {}
        errcode = body.get("errcode")
        message = f"{method} {path}: {response.status_code} {errcode or ''} {body.get('error', '')}".strip()

        if response.status_code == 429 or errcode == "M_LIMIT_EXCEEDED":
            retry_after = None
            if "retry_after_ms" in body:
                retry_after = body["retry_after_ms"] / 1000.0
            elif response.headers.get("Retry-After", "").isdigit():
                retry_after = float(response.headers["Retry-After"])
            raise TransportTransient(message, retry_after=retry_after,
                                     status_code=response.status_code, errcode=errcode)
        if response.status_code >= 500:
            raise TransportTransient(message, status_code=response.status_code, errcode=errcode)
        raise TransportPermanent(message, status_code=response.status_code, errcode=errcode)

    @property
    def is_running(self) -> bool:
        """Check if the client is logged in and running."""
        return self._is_running
