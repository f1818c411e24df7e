import asyncio

import pytest

from orchestra.context import (
    CHANNEL_CLOSED,
    SubsystemContext,
    SubsystemSender,
    to_variant,
    to_variants,
)
from orchestra.core import (
    Communication,
    ContextError,
    MessagePacket,
    PriorityLevel,
    QueueError,
    Signal,
    SignalsReceived,
    SpawnBlockingJob,
    SpawnJob,
    TaskSpawnError,
    timeout,
)


class RecordingChannels:
    def __init__(self):
        self.sent = []
        self.full = False

    async def send_and_log_error(self, priority, signals_received, message):
        self.sent.append(("bounded", priority, signals_received, message))

    def try_send(self, priority, signals_received, message):
        if self.full:
            raise QueueError()
        self.sent.append(("try", priority, signals_received, message))

    def send_unbounded_and_log_error(self, signals_received, message):
        self.sent.append(("unbounded", None, signals_received, message))


def make_context(unbounded=False, to_orchestra=None):
    signals = asyncio.Queue()
    messages = asyncio.Queue()
    extra = asyncio.Queue() if unbounded else None
    channels = RecordingChannels()
    ctx = SubsystemContext(
        signals,
        messages,
        channels,
        to_orchestra if to_orchestra is not None else asyncio.Queue(),
        "Foo",
        unbounded_messages=extra,
    )
    return ctx, signals, messages, extra, channels


class MsgU8:
    pass


def test_to_variant_takes_last_segment():
    assert to_variant("path::to::Foo") == "Foo"
    assert to_variant("Foo") == "Foo"
    assert to_variant("::some::why::ExternEvent") == "ExternEvent"


def test_to_variant_ignores_generic_arguments():
    assert to_variant("a::Wrapper<b::Inner>") == "Wrapper"


def test_to_variant_accepts_class():
    assert to_variant(MsgU8) == "MsgU8"


@pytest.mark.parametrize("path", ["", "a::", "::"])
def test_to_variant_rejects_empty(path):
    with pytest.raises(ValueError):
        to_variant(path)


def test_to_variants_keeps_order():
    assert to_variants(["x::A", "B", "y::z::C"]) == ["A", "B", "C"]


@pytest.mark.asyncio
async def test_sender_tags_with_signal_level():
    channels = RecordingChannels()
    level = SignalsReceived()
    sender = SubsystemSender(channels, level)
    await sender.send_message("a")
    level.inc()
    await sender.send_message_with_priority("b", PriorityLevel.HIGH)
    assert channels.sent == [
        ("bounded", PriorityLevel.NORMAL, 0, "a"),
        ("bounded", PriorityLevel.HIGH, 1, "b"),
    ]


@pytest.mark.asyncio
async def test_sender_send_messages_in_order():
    channels = RecordingChannels()
    sender = SubsystemSender(channels)
    await sender.send_messages(["x", "y", "z"])
    assert [entry[3] for entry in channels.sent] == ["x", "y", "z"]


def test_sender_try_send_and_unbounded():
    channels = RecordingChannels()
    sender = SubsystemSender(channels)
    sender.try_send_message("m")
    sender.send_unbounded_message("u")
    assert channels.sent == [
        ("try", PriorityLevel.NORMAL, 0, "m"),
        ("unbounded", None, 0, "u"),
    ]


def test_sender_try_send_propagates_full():
    channels = RecordingChannels()
    channels.full = True
    sender = SubsystemSender(channels)
    with pytest.raises(QueueError):
        sender.try_send_message_with_priority("m", PriorityLevel.HIGH)
    assert channels.sent == []


@pytest.mark.asyncio
async def test_recv_prefers_signals():
    ctx, signals, messages, _, _ = make_context()
    messages.put_nowait(MessagePacket(0, "msg"))
    signals.put_nowait("sig")
    assert await ctx.recv() == Signal("sig")
    assert ctx.signals_received.load() == 1
    assert await ctx.recv() == Communication("msg")


@pytest.mark.asyncio
async def test_recv_holds_message_until_signal_seen():
    ctx, signals, messages, _, _ = make_context()
    messages.put_nowait(MessagePacket(1, "late"))
    task = asyncio.ensure_future(ctx.recv())
    await asyncio.sleep(0.01)
    assert not task.done()
    signals.put_nowait("sig")
    assert await asyncio.wait_for(task, 1) == Signal("sig")
    assert await asyncio.wait_for(ctx.recv(), 1) == Communication("late")


@pytest.mark.asyncio
async def test_recv_prefers_unbounded_queue():
    ctx, _, messages, extra, _ = make_context(unbounded=True)
    messages.put_nowait(MessagePacket(0, "bounded"))
    extra.put_nowait(MessagePacket(0, "unbounded"))
    assert await ctx.recv() == Communication("unbounded")
    assert await ctx.recv() == Communication("bounded")


@pytest.mark.asyncio
async def test_recv_waits_for_message():
    ctx, _, messages, _, _ = make_context()
    task = asyncio.ensure_future(ctx.recv())
    await asyncio.sleep(0)
    assert not task.done()
    messages.put_nowait(MessagePacket(0, 7))
    assert await asyncio.wait_for(task, 1) == Communication(7)


@pytest.mark.asyncio
async def test_recv_after_timeout_loses_nothing():
    ctx, _, messages, _, _ = make_context()
    assert await timeout(ctx.recv(), 0.01) is None
    messages.put_nowait(MessagePacket(0, "kept"))
    assert await asyncio.wait_for(ctx.recv(), 1) == Communication("kept")


@pytest.mark.asyncio
async def test_recv_signal_channel_closed():
    ctx, signals, _, _, _ = make_context()
    signals.put_nowait(CHANNEL_CLOSED)
    with pytest.raises(ContextError, match="Signal channel is terminated and empty."):
        await ctx.recv()


@pytest.mark.asyncio
async def test_recv_message_channels_closed():
    ctx, _, messages, extra, _ = make_context(unbounded=True)
    messages.put_nowait(CHANNEL_CLOSED)
    extra.put_nowait(MessagePacket(0, "last"))
    extra.put_nowait(CHANNEL_CLOSED)
    assert await ctx.recv() == Communication("last")
    with pytest.raises(ContextError, match="Message channel is terminated and empty."):
        await ctx.recv()


@pytest.mark.asyncio
async def test_try_recv():
    ctx, signals, messages, _, _ = make_context()
    assert ctx.try_recv() is None
    messages.put_nowait(MessagePacket(1, "held"))
    assert ctx.try_recv() is None
    signals.put_nowait("s")
    assert ctx.try_recv() == Signal("s")
    assert ctx.try_recv() == Communication("held")
    assert ctx.try_recv() is None


@pytest.mark.asyncio
async def test_recv_signal_leaves_messages():
    ctx, signals, messages, _, _ = make_context()
    messages.put_nowait(MessagePacket(0, "m"))
    signals.put_nowait("s")
    assert await ctx.recv_signal() == "s"
    assert ctx.signals_received.load() == 1
    assert await ctx.recv() == Communication("m")


@pytest.mark.asyncio
async def test_recv_signal_closed():
    ctx, signals, _, _, _ = make_context()
    signals.put_nowait(CHANNEL_CLOSED)
    with pytest.raises(ContextError):
        await ctx.recv_signal()
    assert ctx.signals_received.load() == 0


@pytest.mark.asyncio
async def test_context_sender_shares_signal_level():
    ctx, signals, _, _, channels = make_context()
    signals.put_nowait("s")
    await ctx.recv()
    await ctx.send_message("out")
    await ctx.send_messages(["a", "b"])
    ctx.send_unbounded_message("u")
    assert [entry[2] for entry in channels.sent] == [1, 1, 1, 1]
    assert [entry[3] for entry in channels.sent] == ["out", "a", "b", "u"]


@pytest.mark.asyncio
async def test_spawn_requests_reach_orchestra():
    requests = asyncio.Queue()
    ctx, *_ = make_context(to_orchestra=requests)

    async def job():
        return None

    first, second = job(), job()
    ctx.spawn("worker", first)
    ctx.spawn_blocking("heavy", second)
    assert requests.get_nowait() == SpawnJob("worker", "Foo", first)
    assert requests.get_nowait() == SpawnBlockingJob("heavy", "Foo", second)
    first.close()
    second.close()


@pytest.mark.asyncio
async def test_spawn_failure_raises_task_spawn_error():
    requests = asyncio.Queue(maxsize=1)
    requests.put_nowait(None)
    ctx, *_ = make_context(to_orchestra=requests)

    async def job():
        return None

    coro = job()
    with pytest.raises(TaskSpawnError) as info:
        ctx.spawn("worker", coro)
    coro.close()
    assert info.value.name == "worker"
    assert str(info.value) == "Failed to spawn task worker"