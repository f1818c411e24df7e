# orchestra

Asyncio building blocks for a system of *subsystems*. Each subsystem runs as its
own task. The subsystems talk to each other only through a shared protocol:
signals come from the orchestra, and messages are routed from one subsystem to
another. The package has no dependencies beyond the standard library.

## Installation

```
pip install .
```

To run the test suite, install the test extra with `pip install .[test]` and then run
`pytest`.

## Modules

- `orchestra.core`: the shared types, errors and the `timeout` helper.
- `orchestra.context`: `SubsystemContext`, `SubsystemSender`, the `ChannelsOut`
  protocol, `CHANNEL_CLOSED`, `to_variant` and `to_variants`.
- `orchestra.attrs`: `parse_orchestra_attr`, `OrchestraAttrArgs` and `AttrParseError`.

## Core types (`orchestra.core`)

- `Signal(signal)` and `Communication(msg)` are the two kinds of item a subsystem
  receives. `FromOrchestra` is their union.
- `MessagePacket(signals_received, message)` carries every message. `make_packet`
  builds one. `signals_received` is the number of signals the sender had seen when
  it sent the message.
- `SignalsReceived` is a thread-safe counter with `load()` and `inc()`. A context
  and its sender share one instance.
- `SpawnJob` and `SpawnBlockingJob` are the requests a context sends to the
  orchestra to start a job. Each holds `name`, `subsystem` and `future`.
  `ToOrchestra` is their union.
- `Spawner` is an abstract base class with `spawn(name, group, future)` and
  `spawn_blocking(name, group, future)`.
- `SpawnedSubsystem(name, future)` describes a subsystem that has been started.
- `PriorityLevel.NORMAL` and `PriorityLevel.HIGH` set the priority of a message.
- Errors: `OrchestraError` is the base class. Its subclasses are `QueueError`,
  `TaskSpawnError(name)`, `ContextError(description)`,
  `SubsystemStalledError(subsystem, source, message_type)` and
  `FromOriginError(origin, source)`. `FromOriginError` records `source` as its
  cause.
- `await timeout(awaitable, duration)` returns the result of the awaitable. It
  returns `None` if `duration` passes first. `duration` is in seconds, or a
  `datetime.timedelta`.

## Contexts and senders (`orchestra.context`)

A `SubsystemContext` is built from these parts:

- an `asyncio.Queue` of signals;
- an `asyncio.Queue` of `MessagePacket`s, and optionally a second, unbounded one
  (`unbounded_messages`), which is read first;
- a `ChannelsOut` object, which routes outgoing messages;
- a `to_orchestra` object with `put_nowait`, which receives spawn requests;
- the subsystem's `name`.

Putting `CHANNEL_CLOSED` into a queue closes it. After that, receiving raises
`ContextError`.

- `await ctx.recv()` returns the next `Signal` or `Communication`. Signals are
  returned first. A message whose packet asks for more signals than the context has
  seen is held back until those signals have arrived.
- `ctx.try_recv()` returns an item if one is ready, and `None` otherwise.
- `await ctx.recv_signal()` returns the next signal and leaves messages queued.
- `ctx.spawn(name, future)` and `ctx.spawn_blocking(name, future)` pass a
  `SpawnJob` or a `SpawnBlockingJob` to `to_orchestra`. If that fails, they raise
  `TaskSpawnError`.
- `ctx.send_message`, `ctx.send_messages` and `ctx.send_unbounded_message` send
  through `ctx.sender`.

`SubsystemSender` tags each message with the current signal count and passes it to
its `ChannelsOut`. It has `send_message`, `send_message_with_priority`,
`try_send_message`, `try_send_message_with_priority`, `send_messages` and
`send_unbounded_message`. An error raised by the channel's `try_send` reaches the
caller unchanged.

A `ChannelsOut` needs three methods:

- `async send_and_log_error(priority, signals_received, message)`;
- `try_send(priority, signals_received, message)`;
- `send_unbounded_and_log_error(signals_received, message)`.

```python
import asyncio

from orchestra.context import SubsystemContext
from orchestra.core import Communication, Signal, make_packet


class Router:
    def __init__(self):
        self.sent = []

    async def send_and_log_error(self, priority, signals_received, message):
        self.sent.append((signals_received, message))

    def try_send(self, priority, signals_received, message):
        self.sent.append((signals_received, message))

    def send_unbounded_and_log_error(self, signals_received, message):
        self.sent.append((signals_received, message))


async def main():
    signals, messages, jobs = asyncio.Queue(), asyncio.Queue(), asyncio.Queue()
    ctx = SubsystemContext(signals, messages, Router(), jobs, "example")
    messages.put_nowait(make_packet(1, "after-start"))
    signals.put_nowait("start")
    assert await ctx.recv() == Signal("start")
    assert await ctx.recv() == Communication("after-start")


asyncio.run(main())
```

`to_variant` returns the last identifier of a message type path, for example
`path::to::Foo` gives `Foo`. Generic arguments are dropped. Given a class, it
returns the class name. `to_variants` does the same for several paths.

## Attribute arguments (`orchestra.attrs`)

An orchestra's settings can be written as a short attribute string:

```python
from orchestra.attrs import parse_orchestra_attr

args = parse_orchestra_attr(
    "gen=AllMessages, event=Event, signal=Signal, error=Error, "
    "signal_capacity=111, message_capacity=222"
)
assert args.signal_channel_capacity == 111
assert args.message_channel_capacity == 222
```

- The keys `gen`, `event`, `signal` and `error` are required.
- `outgoing` is optional.
- `signal_capacity` defaults to 64 and `message_capacity` to 1024.
- `boxed_messages` takes `true` or `false`, and defaults to `false`.

A missing required key, a duplicate key or a malformed value raises
`AttrParseError`.

## What the package does not do

The package supplies the parts a subsystem works with, but not the orchestra that
runs them:

- There is no builder or runner that starts subsystems, forwards signals or
  supervises tasks.
- There are no generated message wrapper types.
- There is no ready-made `ChannelsOut` or `Spawner`, and no metered channels.

The application provides these parts and connects them.