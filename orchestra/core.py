"""Core types shared by subsystems and the orchestra that runs them."""

from __future__ import annotations

import abc
import asyncio
import enum
import threading
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Awaitable, Generic, Optional, TypeVar, Union

T = TypeVar("T")
M = TypeVar("M")
S = TypeVar("S")


class Spawner(abc.ABC):
    """Something that can run futures on behalf of the orchestra."""

    @abc.abstractmethod
    def spawn(self, name: str, group: Optional[str], future: Awaitable[None]) -> None:
        """Spawn the given non-blocking future; name and group identify it in logs."""

    @abc.abstractmethod
    def spawn_blocking(
        self, name: str, group: Optional[str], future: Awaitable[None]
    ) -> None:
        """Spawn the given blocking future; name and group identify it in logs."""


@dataclass
class SpawnJob:
    """Request from a subsystem to spawn a non-blocking job."""

    name: str
    subsystem: Optional[str]
    future: Awaitable[None]

    def __str__(self) -> str:
        return f"SpawnJob{{ {self.name}, {self.subsystem or 'default'} ..}}"


@dataclass
class SpawnBlockingJob:
    """Request from a subsystem to spawn a job on the blocking pool."""

    name: str
    subsystem: Optional[str]
    future: Awaitable[None]

    def __str__(self) -> str:
        return f"SpawnBlockingJob{{ {self.name}, {self.subsystem or 'default'} ..}}"


ToOrchestra = Union[SpawnJob, SpawnBlockingJob]


@dataclass
class MessagePacket(Generic[T]):
    """A message tagged with the signal level at the time it was sent."""

    signals_received: int
    message: T


def make_packet(signals_received: int, message: T) -> MessagePacket[T]:
    """Create a packet from its parts."""
    return MessagePacket(signals_received, message)


class SignalsReceived:
    """Shared, thread-safe watermark of signals received.

    Sharing one instance between a context and its sender plays the role
    of a cloned handle: both see the same counter.
    """

    def __init__(self, value: int = 0) -> None:
        self._value = value
        self._lock = threading.Lock()

    def load(self) -> int:
        """Return the current number of received signals."""
        with self._lock:
            return self._value

    def inc(self) -> None:
        """Increase the number of received signals by one."""
        with self._lock:
            self._value += 1

    def __repr__(self) -> str:
        return f"SignalsReceived({self.load()})"


class OrchestraError(Exception):
    """Base class of faults raised by the orchestra machinery."""


class QueueError(OrchestraError):
    """A channel to a subsystem was closed or failed."""

    def __init__(self) -> None:
        super().__init__("Queue error")


class TaskSpawnError(OrchestraError):
    """A task could not be spawned."""

    def __init__(self, name: str) -> None:
        super().__init__(f"Failed to spawn task {name}")
        self.name = name


class ContextError(OrchestraError):
    """A context operation failed."""

    def __init__(self, description: str) -> None:
        super().__init__(f"Failed to {description}")
        self.description = description


class SubsystemStalledError(OrchestraError):
    """A subsystem stopped draining its queue."""

    def __init__(self, subsystem: str, source: str, message_type: str) -> None:
        super().__init__(
            f"Subsystem stalled: {subsystem}, source: {source}, type: {message_type}"
        )
        self.subsystem = subsystem
        self.source = source
        self.message_type = message_type


class FromOriginError(OrchestraError):
    """Wraps an error with the name of the subsystem it came from."""

    def __init__(self, origin: str, source: BaseException) -> None:
        super().__init__(f"Error originated in {origin}")
        self.origin = origin
        self.source = source
        self.__cause__ = source


@dataclass
class SpawnedSubsystem:
    """A started subsystem: its name and the awaitable that runs it."""

    name: str
    future: Awaitable[Any]


@dataclass(frozen=True)
class Signal(Generic[S]):
    """A signal delivered from the orchestra to a subsystem."""

    signal: S


@dataclass(frozen=True)
class Communication(Generic[M]):
    """A message from another subsystem."""

    msg: M


FromOrchestra = Union[Signal, Communication]


class PriorityLevel(enum.Enum):
    """Priority of a message sent over a bounded channel."""

    NORMAL = "normal"
    HIGH = "high"


async def timeout(
    awaitable: Awaitable[T], duration: Union[float, timedelta]
) -> Optional[T]:
    """Await with a time limit; return the result, or None if time ran out."""
    seconds = duration.total_seconds() if isinstance(duration, timedelta) else duration
    try:
        return await asyncio.wait_for(awaitable, seconds)
    except asyncio.TimeoutError:
        return None