"""Subsystem contexts and senders.

A :class:`SubsystemContext` is handed to a subsystem when it starts. It
receives signals from the orchestra and messages from other subsystems,
keeping messages back until the signals they were sent after have been
seen. It also lets the subsystem spawn jobs. A :class:`SubsystemSender`
sends messages towards other subsystems, tagging each message with the
number of signals its owner has received so far.
"""

from __future__ import annotations

import asyncio
from collections import deque
from typing import Any, Awaitable, Iterable, Optional, Protocol, Union

from .core import (
    Communication,
    ContextError,
    FromOrchestra,
    MessagePacket,
    PriorityLevel,
    Signal,
    SignalsReceived,
    SpawnBlockingJob,
    SpawnJob,
    TaskSpawnError,
)

__all__ = [
    "CHANNEL_CLOSED",
    "ChannelsOut",
    "SubsystemContext",
    "SubsystemSender",
    "to_variant",
    "to_variants",
]


class _ClosedMarker:
    def __repr__(self) -> str:
        return "CHANNEL_CLOSED"


CHANNEL_CLOSED: Any = _ClosedMarker()
"""Put into a queue to mark the channel as terminated."""

_EMPTY: Any = object()

_SIGNALS_TERMINATED = "Signal channel is terminated and empty."
_MESSAGES_TERMINATED = "Message channel is terminated and empty."


def _strip_generics(text: str) -> str:
    depth = 0
    kept = []
    for char in text:
        if char == "<":
            depth += 1
        elif char == ">":
            depth -= 1
        elif depth == 0:
            kept.append(char)
    return "".join(kept)


def to_variant(path: Union[str, type]) -> str:
    """Return the final identifier of a message type path.

    ``"path::to::Foo"`` becomes ``"Foo"``; a class gives its name.
    """
    if isinstance(path, type):
        return path.__name__
    last = _strip_generics(path).split("::")[-1].strip()
    if not last.isidentifier():
        raise ValueError("Path is empty, but it must end with an identifier")
    return last


def to_variants(paths: Iterable[Union[str, type]]) -> list[str]:
    """Return the final identifiers of several message type paths."""
    return [to_variant(path) for path in paths]


class ChannelsOut(Protocol):
    """Routes messages to the subsystems that consume them."""

    async def send_and_log_error(
        self, priority: PriorityLevel, signals_received: int, message: Any
    ) -> None: ...

    def try_send(
        self, priority: PriorityLevel, signals_received: int, message: Any
    ) -> None: ...

    def send_unbounded_and_log_error(
        self, signals_received: int, message: Any
    ) -> None: ...


class SubsystemSender:
    """Sends messages towards other subsystems.

    Copies of a sender share the channels and the signal watermark.
    """

    def __init__(
        self, channels: ChannelsOut, signals_received: Optional[SignalsReceived] = None
    ) -> None:
        self.channels = channels
        self.signals_received = (
            signals_received if signals_received is not None else SignalsReceived()
        )

    def __repr__(self) -> str:
        return f"SubsystemSender(signals_received={self.signals_received.load()})"

    async def send_message(self, msg: Any) -> None:
        """Send a message with normal priority, routed by its type."""
        await self.send_message_with_priority(msg, PriorityLevel.NORMAL)

    async def send_message_with_priority(self, msg: Any, priority: PriorityLevel) -> None:
        """Send a message with the given priority, routed by its type."""
        await self.channels.send_and_log_error(
            priority, self.signals_received.load(), msg
        )

    def try_send_message(self, msg: Any) -> None:
        """Send without waiting; the channel's error propagates if it is full."""
        self.try_send_message_with_priority(msg, PriorityLevel.NORMAL)

    def try_send_message_with_priority(self, msg: Any, priority: PriorityLevel) -> None:
        """Send with a priority without waiting; channel errors propagate."""
        self.channels.try_send(priority, self.signals_received.load(), msg)

    async def send_messages(self, msgs: Iterable[Any]) -> None:
        """Send several messages in order."""
        for msg in msgs:
            await self.send_message(msg)

    def send_unbounded_message(self, msg: Any) -> None:
        """Send onto the unbounded queue of the consuming subsystem."""
        self.channels.send_unbounded_and_log_error(self.signals_received.load(), msg)


class _Inbox:
    """A queue with a look-ahead buffer and a sticky closed state."""

    def __init__(self, queue: asyncio.Queue) -> None:
        self.queue = queue
        self.buffer: deque = deque()
        self.closed = False

    def _accept(self, item: Any) -> Any:
        if item is CHANNEL_CLOSED:
            self.closed = True
        return item

    def poll(self) -> Any:
        if self.buffer:
            return self._accept(self.buffer.popleft())
        if self.closed:
            return CHANNEL_CLOSED
        try:
            item = self.queue.get_nowait()
        except asyncio.QueueEmpty:
            return _EMPTY
        return self._accept(item)

    @property
    def exhausted(self) -> bool:
        return self.closed and not self.buffer


async def _wait_any(inboxes: Iterable[_Inbox]) -> None:
    """Wait until one of the inboxes has an item, keeping it in its buffer."""
    tasks = {
        asyncio.ensure_future(inbox.queue.get()): inbox
        for inbox in inboxes
        if not inbox.closed
    }
    if not tasks:
        return
    try:
        await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for task, inbox in tasks.items():
            if task.done() and not task.cancelled():
                inbox.buffer.append(task.result())
            else:
                task.cancel()


class SubsystemContext:
    """What a subsystem is given to talk to the orchestra and its peers.

    ``signals`` carries orchestra signals; ``messages`` and the optional
    ``unbounded_messages`` carry :class:`MessagePacket` items, with the
    unbounded queue preferred. Putting :data:`CHANNEL_CLOSED` into a queue
    terminates it. ``to_orchestra`` receives spawn requests via
    ``put_nowait``.
    """

    def __init__(
        self,
        signals: asyncio.Queue,
        messages: asyncio.Queue,
        to_subsystems: ChannelsOut,
        to_orchestra: Any,
        name: str,
        unbounded_messages: Optional[asyncio.Queue] = None,
    ) -> None:
        self._signals = _Inbox(signals)
        self._message_inboxes = [
            _Inbox(queue) for queue in (unbounded_messages, messages) if queue is not None
        ]
        self.signals_received = SignalsReceived()
        self.sender = SubsystemSender(to_subsystems, self.signals_received)
        self._to_orchestra = to_orchestra
        self._pending_incoming: Optional[tuple[int, Any]] = None
        self.name = name

    def __repr__(self) -> str:
        return (
            f"SubsystemContext(name={self.name!r}, "
            f"signals_received={self.signals_received.load()})"
        )

    def _deliver_signal(self, item: Any) -> Signal:
        if item is CHANNEL_CLOSED:
            raise ContextError(_SIGNALS_TERMINATED)
        self.signals_received.inc()
        return Signal(item)

    def _accept_packet(self, packet: Any) -> Optional[Communication]:
        if packet is CHANNEL_CLOSED:
            raise ContextError(_MESSAGES_TERMINATED)
        if packet.signals_received > self.signals_received.load():
            self._pending_incoming = (packet.signals_received, packet.message)
            return None
        return Communication(packet.message)

    def _poll_message(self) -> Any:
        for inbox in self._message_inboxes:
            item = inbox.poll()
            if item is not _EMPTY and item is not CHANNEL_CLOSED:
                return item
        if all(inbox.exhausted for inbox in self._message_inboxes):
            return CHANNEL_CLOSED
        return _EMPTY

    def _poll_event(self) -> Optional[tuple[str, Any]]:
        signal = self._signals.poll()
        if signal is not _EMPTY:
            return ("signal", signal)
        packet = self._poll_message()
        if packet is _EMPTY:
            return None
        return ("message", packet)

    def _release_pending(self) -> Optional[Communication]:
        assert self._pending_incoming is not None
        needs, msg = self._pending_incoming
        if needs <= self.signals_received.load():
            self._pending_incoming = None
            return Communication(msg)
        return None

    async def _next_signal(self) -> Any:
        while True:
            item = self._signals.poll()
            if item is not _EMPTY:
                return item
            await _wait_any([self._signals])

    def try_recv(self) -> Optional[FromOrchestra]:
        """Receive a signal or message if one is ready, else return None.

        Raises ContextError if a channel has terminated.
        """
        while True:
            if self._pending_incoming is not None:
                released = self._release_pending()
                if released is not None:
                    return released
                signal = self._signals.poll()
                if signal is _EMPTY:
                    return None
                return self._deliver_signal(signal)
            event = self._poll_event()
            if event is None:
                return None
            kind, item = event
            if kind == "signal":
                return self._deliver_signal(item)
            result = self._accept_packet(item)
            if result is not None:
                return result

    async def recv(self) -> FromOrchestra:
        """Receive the next signal or message, signals first.

        A message sent after more signals than this context has seen is
        held back until those signals have been received.
        """
        while True:
            if self._pending_incoming is not None:
                released = self._release_pending()
                if released is not None:
                    return released
                return self._deliver_signal(await self._next_signal())
            event = self._poll_event()
            if event is None:
                await _wait_any([self._signals, *self._message_inboxes])
                continue
            kind, item = event
            if kind == "signal":
                return self._deliver_signal(item)
            result = self._accept_packet(item)
            if result is not None:
                return result

    async def recv_signal(self) -> Any:
        """Receive the next signal, leaving messages queued."""
        return self._deliver_signal(await self._next_signal()).signal

    def _request(self, job: Union[SpawnJob, SpawnBlockingJob]) -> None:
        try:
            self._to_orchestra.put_nowait(job)
        except Exception as exc:
            raise TaskSpawnError(job.name) from exc

    def spawn(self, name: str, future: Awaitable[None]) -> None:
        """Ask the orchestra to spawn a child task."""
        self._request(SpawnJob(name, self.name, future))

    def spawn_blocking(self, name: str, future: Awaitable[None]) -> None:
        """Ask the orchestra to spawn a task on its blocking pool."""
        self._request(SpawnBlockingJob(name, self.name, future))

    async def send_message(self, msg: Any) -> None:
        """Send a message to another subsystem through this context's sender."""
        await self.sender.send_message(msg)

    async def send_messages(self, msgs: Iterable[Any]) -> None:
        """Send several messages through this context's sender."""
        await self.sender.send_messages(msgs)

    def send_unbounded_message(self, msg: Any) -> None:
        """Send a message on the unbounded queue through this context's sender."""
        self.sender.send_unbounded_message(msg)