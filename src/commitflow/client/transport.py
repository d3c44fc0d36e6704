"""Client transport session over the host's HTTP long-poll API."""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass
from enum import Enum

import httpx
from pydantic import ValidationError

from commitflow.core.session import RunInProgressError
from commitflow.models.events import ENVELOPE_LIST_ADAPTER, EventEnvelope
from commitflow.models.workflow import WorkflowRequest

logger = logging.getLogger(__name__)

_POLL_GRACE_SECONDS = 10.0
_MALFORMED_REPLY = (AttributeError, KeyError, TypeError, ValueError, ValidationError)


class StreamSignal(Enum):
    """Non-event outcomes of ``next_event``."""

    TIMEOUT = "timeout"
    CLOSED = "closed"


class SessionConnectionError(ConnectionError):
    """The orchestration host is unreachable or refused the session."""


class SendError(RuntimeError):
    """A command could not be delivered to the host."""


class TransportDropped(RuntimeError):
    """The connection failed while waiting for events."""


@dataclass(slots=True, frozen=True)
class StartCommand:
    request: WorkflowRequest


@dataclass(slots=True, frozen=True)
class CancelCommand:
    run_id: str


@dataclass(slots=True, frozen=True)
class StartAck:
    run_id: str


@dataclass(slots=True, frozen=True)
class CancelAck:
    accepted: bool
    reason: str | None = None


def base_url(address: str) -> str:
    if address.startswith(("http://", "https://")):
        return address.rstrip("/")
    return f"http://{address}"


class TransportSession:
    """One open session on the orchestration host.

    Events are delivered in sequence order; envelopes at or below the
    delivered cursor are dropped.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        session_id: str,
        *,
        address: str,
        connect_timeout: float,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._client = client
        self.session_id = session_id
        self.address = address
        self._connect_timeout = connect_timeout
        self._transport = transport
        self.run_id: str | None = None
        self._delivered = -1
        self._acknowledged = -1
        self._buffer: deque[EventEnvelope] = deque()

    @classmethod
    async def open(
        cls,
        address: str,
        *,
        connect_timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> TransportSession:
        """Connect, check host health and create a session."""
        client = _make_client(address, connect_timeout, transport)
        try:
            health = await client.get("/api/v1/health")
            health.raise_for_status()
            response = await client.post("/api/v1/sessions")
            response.raise_for_status()
            session_id = str(response.json()["session_id"])
        except (httpx.HTTPError, KeyError, ValueError) as exc:
            await client.aclose()
            msg = f"cannot open session on {address}: {exc}"
            raise SessionConnectionError(msg) from exc
        logger.info("opened session %s on %s", session_id, address)
        return cls(
            client,
            session_id,
            address=address,
            connect_timeout=connect_timeout,
            transport=transport,
        )

    @property
    def last_acknowledged(self) -> int:
        return self._acknowledged

    async def send(self, command: StartCommand | CancelCommand) -> StartAck | CancelAck:
        if isinstance(command, StartCommand):
            return await self._start(command)
        return await self._cancel(command)

    async def _start(self, command: StartCommand) -> StartAck:
        request = command.request
        payload = {
            "repository_path": str(request.repository_path),
            "hint": request.hint,
            "message_prefix": request.message_prefix,
            "skip_staging": request.skip_staging,
        }
        try:
            response = await self._client.post(
                f"/api/v1/sessions/{self.session_id}/runs", json=payload
            )
        except httpx.HTTPError as exc:
            msg = f"start command failed: {exc}"
            raise SendError(msg) from exc
        if response.status_code == httpx.codes.CONFLICT:
            try:
                run_id = str(response.json()["detail"]["run_id"])
            except _MALFORMED_REPLY:
                run_id = "unknown"
            raise RunInProgressError(run_id)
        if response.status_code != httpx.codes.CREATED:
            msg = f"start command rejected with HTTP {response.status_code}: {response.text}"
            raise SendError(msg)

        try:
            run_id = str(response.json()["run_id"])
        except _MALFORMED_REPLY as exc:
            msg = f"start command returned a malformed reply: {exc}"
            raise SendError(msg) from exc
        self.run_id = run_id
        self._delivered = -1
        self._acknowledged = -1
        self._buffer.clear()
        return StartAck(run_id=self.run_id)

    async def _cancel(self, command: CancelCommand) -> CancelAck:
        try:
            response = await self._client.post(
                f"/api/v1/sessions/{self.session_id}/runs/{command.run_id}/cancel"
            )
        except httpx.HTTPError as exc:
            msg = f"cancel command failed: {exc}"
            raise SendError(msg) from exc
        if response.status_code == httpx.codes.ACCEPTED:
            return CancelAck(accepted=True)
        if response.status_code in (httpx.codes.CONFLICT, httpx.codes.NOT_FOUND):
            try:
                reason = str(response.json()["detail"])
            except _MALFORMED_REPLY:
                reason = response.text or f"HTTP {response.status_code}"
            return CancelAck(accepted=False, reason=reason)
        msg = f"cancel command rejected with HTTP {response.status_code}"
        raise SendError(msg)

    async def next_event(self, timeout: float) -> EventEnvelope | StreamSignal:
        """Return the next undelivered envelope, waiting up to ``timeout`` seconds."""
        if self.run_id is None:
            msg = "no run started on this session"
            raise SendError(msg)
        if not self._buffer:
            fetched = await self._poll(timeout)
            if fetched is StreamSignal.CLOSED:
                return fetched
            for envelope in fetched:
                if envelope.seq > self._delivered and (
                    not self._buffer or envelope.seq > self._buffer[-1].seq
                ):
                    self._buffer.append(envelope)
        if not self._buffer:
            return StreamSignal.TIMEOUT
        envelope = self._buffer.popleft()
        self._delivered = envelope.seq
        return envelope

    async def _poll(self, timeout: float) -> list[EventEnvelope] | StreamSignal:
        try:
            response = await self._client.get(
                f"/api/v1/sessions/{self.session_id}/runs/{self.run_id}/events",
                params={"after": self._delivered, "wait": timeout},
                timeout=httpx.Timeout(timeout + _POLL_GRACE_SECONDS, connect=self._connect_timeout),
            )
        except httpx.HTTPError as exc:
            msg = f"event stream interrupted: {exc}"
            raise TransportDropped(msg) from exc
        if response.status_code == httpx.codes.NOT_FOUND:
            return StreamSignal.CLOSED
        if response.status_code != httpx.codes.OK:
            msg = f"event stream returned HTTP {response.status_code}"
            raise TransportDropped(msg)
        try:
            return ENVELOPE_LIST_ADAPTER.validate_python(response.json()["events"])
        except _MALFORMED_REPLY as exc:
            msg = f"event stream returned a malformed reply: {exc}"
            raise TransportDropped(msg) from exc

    async def acknowledge(self, seq: int) -> bool:
        """Tell the host ``seq`` was handled. Returns True when the run is released."""
        if self.run_id is None:
            return False
        try:
            response = await self._client.post(
                f"/api/v1/sessions/{self.session_id}/runs/{self.run_id}/ack",
                json={"seq": seq},
            )
            response.raise_for_status()
        except httpx.HTTPError as exc:
            msg = f"acknowledge failed: {exc}"
            raise TransportDropped(msg) from exc
        self._acknowledged = max(self._acknowledged, seq)
        try:
            return bool(response.json()["released"])
        except _MALFORMED_REPLY as exc:
            msg = f"acknowledge returned a malformed reply: {exc}"
            raise TransportDropped(msg) from exc

    async def reconnect(self) -> None:
        """Reopen the HTTP connection and resume after the last acknowledged event."""
        await self._client.aclose()
        self._client = _make_client(self.address, self._connect_timeout, self._transport)
        try:
            health = await self._client.get("/api/v1/health")
            health.raise_for_status()
        except httpx.HTTPError as exc:
            msg = f"cannot reconnect to {self.address}: {exc}"
            raise SessionConnectionError(msg) from exc
        self._buffer.clear()
        self._delivered = self._acknowledged
        logger.info("reconnected session %s, resuming after event %d", self.session_id, self._delivered)

    async def close(self) -> None:
        try:
            await self._client.delete(f"/api/v1/sessions/{self.session_id}")
        except httpx.HTTPError as exc:
            logger.debug("closing session %s failed: %s", self.session_id, exc)
        finally:
            await self._client.aclose()


def _make_client(
    address: str,
    connect_timeout: float,
    transport: httpx.AsyncBaseTransport | None,
) -> httpx.AsyncClient:
    return httpx.AsyncClient(
        base_url=base_url(address),
        timeout=httpx.Timeout(connect_timeout),
        transport=transport,
    )
