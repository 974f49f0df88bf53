"""Transport boundary between the two devices.

A transport moves opaque byte payloads to the peer and reports what
happens to it as TransportEvents on a single asyncio queue. The sync
coordinator consumes that queue, so every inbound payload and
reachability change is handled in order on one event loop.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Protocol

from ..errors import TransportUnavailableError

logger = logging.getLogger(__name__)

ReplyHandler = Callable[[bytes], Awaitable[None]]


class DeliveryChannel(Enum):
    """How a payload travelled."""

    IMMEDIATE = "immediate"  # best-effort, peer must be reachable
    RELIABLE = "reliable"  # queued until the peer can take it
    CONTEXT = "context"  # last-write-wins, only the latest value is kept


class TransportEventType(Enum):
    RECEIVED = "received"
    REACHABILITY_CHANGED = "reachability_changed"
    ACTIVATION_COMPLETE = "activation_complete"


@dataclass
class TransportEvent:
    """Something the transport wants the coordinator to know about."""

    type: TransportEventType
    payload: bytes | None = None
    channel: DeliveryChannel | None = None
    reply: ReplyHandler | None = None
    reachable: bool | None = None
    error: str | None = None


class Transport(Protocol):
    """What the sync coordinator needs from a device-to-device link."""

    events: asyncio.Queue[TransportEvent]

    def is_reachable(self) -> bool: ...

    async def activate(self) -> None: ...

    async def close(self) -> None: ...

    async def send_immediate(
        self,
        payload: bytes,
        expect_reply: bool = False,
        timeout: float | None = None,
    ) -> bytes | None:
        """Send now. Raises TransportUnavailableError if the peer is unreachable.

        With expect_reply, waits for the peer's answer and returns it, or
        None if no answer came within timeout.
        """
        ...

    async def send_reliable(self, payload: bytes) -> None: ...

    async def update_context(self, payload: bytes) -> None: ...


class LoopbackTransport:
    """In-process transport linking two devices in the same event loop.

    Reachability is a property of the link and is toggled with
    set_reachable(). While the link is down, reliable payloads are held
    and the latest context value replaces any older one; both are
    delivered when the link comes back.
    """

    def __init__(self, name: str):
        self.name = name
        self.events: asyncio.Queue[TransportEvent] = asyncio.Queue()
        self._peer: "LoopbackTransport | None" = None
        self._reachable = False
        self._activated = False
        self._pending_reliable: list[bytes] = []
        self._pending_context: bytes | None = None

    @classmethod
    def pair(
        cls, first: str = "phone", second: str = "watch", reachable: bool = True
    ) -> tuple["LoopbackTransport", "LoopbackTransport"]:
        """Create two linked transports."""
        a, b = cls(first), cls(second)
        a._peer, b._peer = b, a
        a._reachable = b._reachable = reachable
        return a, b

    @property
    def peer(self) -> "LoopbackTransport":
        if self._peer is None:
            raise RuntimeError(f"Loopback transport {self.name} has no peer")
        return self._peer

    @property
    def pending_reliable(self) -> int:
        return len(self._pending_reliable)

    def is_reachable(self) -> bool:
        return self._peer is not None and self._reachable

    async def activate(self) -> None:
        self._activated = True
        self.events.put_nowait(TransportEvent(type=TransportEventType.ACTIVATION_COMPLETE))
        logger.debug(f"Loopback {self.name} activated")

    async def close(self) -> None:
        self._activated = False

    def set_reachable(self, reachable: bool) -> None:
        """Bring the link up or down, notifying both ends."""
        for side in (self, self.peer):
            if side._reachable == reachable:
                continue
            side._reachable = reachable
            side.events.put_nowait(
                TransportEvent(
                    type=TransportEventType.REACHABILITY_CHANGED,
                    reachable=reachable,
                )
            )

        if reachable:
            self._flush()
            self.peer._flush()

    def _flush(self) -> None:
        pending, self._pending_reliable = self._pending_reliable, []
        for payload in pending:
            self._deliver(payload, DeliveryChannel.RELIABLE)

        if self._pending_context is not None:
            context, self._pending_context = self._pending_context, None
            self._deliver(context, DeliveryChannel.CONTEXT)

    def _deliver(
        self,
        payload: bytes,
        channel: DeliveryChannel,
        reply: ReplyHandler | None = None,
    ) -> None:
        self.peer.events.put_nowait(
            TransportEvent(
                type=TransportEventType.RECEIVED,
                payload=payload,
                channel=channel,
                reply=reply,
            )
        )

    async def send_immediate(
        self,
        payload: bytes,
        expect_reply: bool = False,
        timeout: float | None = None,
    ) -> bytes | None:
        if not self.is_reachable():
            raise TransportUnavailableError(f"{self.peer.name} is not reachable")

        if not expect_reply:
            self._deliver(payload, DeliveryChannel.IMMEDIATE)
            return None

        future: asyncio.Future[bytes] = asyncio.get_running_loop().create_future()

        async def reply(data: bytes) -> None:
            if not future.done():
                future.set_result(data)

        self._deliver(payload, DeliveryChannel.IMMEDIATE, reply=reply)
        try:
            return await asyncio.wait_for(future, timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(f"No reply from {self.peer.name} within {timeout}s")
            return None

    async def send_reliable(self, payload: bytes) -> None:
        if self.is_reachable():
            self._deliver(payload, DeliveryChannel.RELIABLE)
        else:
            self._pending_reliable.append(payload)
            logger.debug(f"Queued reliable payload for {self.peer.name}")

    async def update_context(self, payload: bytes) -> None:
        if self.is_reachable():
            self._deliver(payload, DeliveryChannel.CONTEXT)
        else:
            self._pending_context = payload
