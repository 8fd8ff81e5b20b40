"""Tests for the individual clone strategies."""

import asyncio
import gc
import socket
import sqlite3
import threading
import weakref
from pathlib import Path

import pytest

from native_clone.channels import MessageEvent
from native_clone.channels import get_message_bus
from native_clone.cloners import DeepcopyCloner
from native_clone.cloners import MessageBusCloner
from native_clone.cloners import PickleCloner
from native_clone.cloners import SocketPairCloner
from native_clone.cloners import SqliteStoreCloner
from native_clone.errors import UnsupportedOperationError

REPLY_TIMEOUT_SECONDS: float = 5.0


def _rebuild_fails() -> object:
    """Raise while a pickled payload is being loaded.

    :raises ValueError: Always.
    """
    raise ValueError("cannot rebuild payload")


class Unrebuildable:
    """Value that pickles fine but cannot be loaded back."""

    def __reduce__(self) -> object:
        """Point unpickling at a function that always raises.

        :returns: Reduce tuple.
        """
        return (_rebuild_fails, ())


def _sample_value() -> dict[str, object]:
    """Build a nested value with a self-reference.

    :returns: Composite value.
    """
    nested: list[object] = [1, 2, None]
    value: dict[str, object] = {"a": nested, "b": {"c": (3, "four")}, "d": b"bytes"}
    nested.append(nested)
    return value


def _assert_deep_copy(original: dict[str, object], copied: object) -> None:
    """Check that ``copied`` mirrors ``original`` without sharing containers.

    :param original: Value from :func:`_sample_value`.
    :param copied: Clone under test.
    """
    assert isinstance(copied, dict) is True
    assert copied is not original
    copied_list: object = copied["a"]
    assert isinstance(copied_list, list) is True
    assert copied_list is not original["a"]
    assert copied_list[:3] == [1, 2, None]
    assert copied_list[3] is copied_list
    assert copied["b"] == {"c": (3, "four")}
    assert copied["b"] is not original["b"]
    assert copied["d"] == b"bytes"


@pytest.mark.parametrize("cloner_type", [PickleCloner, DeepcopyCloner])
def test_direct_cloners_copy_synchronously(cloner_type: type[PickleCloner] | type[DeepcopyCloner]) -> None:
    """Direct strategies should clone in-process, including cycles."""
    assert cloner_type.probe() is True
    cloner = cloner_type()
    assert cloner.is_inherently_synchronous() is True

    original: dict[str, object] = _sample_value()
    _assert_deep_copy(original, cloner.clone_sync(original))


@pytest.mark.asyncio
async def test_direct_cloner_async_wraps_sync() -> None:
    """The async surface of a direct strategy should return the same kind of clone."""
    cloner = PickleCloner()
    original: dict[str, object] = _sample_value()
    pending: object = cloner.clone_async(original)
    assert asyncio.iscoroutine(pending) is True
    _assert_deep_copy(original, await pending)


def test_pickle_cloner_propagates_primitive_errors() -> None:
    """Values the primitive cannot handle should raise its own error."""
    with pytest.raises(TypeError):
        PickleCloner().clone_sync(threading.Lock())


def test_boundary_cloners_refuse_sync_cloning() -> None:
    """Boundary strategies cannot answer without suspending."""
    for cloner in (SocketPairCloner(), MessageBusCloner(), SqliteStoreCloner(":memory:")):
        assert cloner.is_inherently_synchronous() is False
        with pytest.raises(UnsupportedOperationError) as exc_info:
            cloner.clone_sync({})
        assert exc_info.value.strategy_name == cloner.name
        cloner.close()


@pytest.mark.asyncio
async def test_socketpair_cloner_round_trips_concurrent_values() -> None:
    """Concurrent clones should each get their own value back and leave nothing pending."""
    cloner = SocketPairCloner()
    try:
        originals: list[dict[str, object]] = [{"index": index, "items": list(range(index))} for index in range(25)]
        results: list[object] = await asyncio.wait_for(
            asyncio.gather(*(cloner.clone_async(value) for value in originals)),
            timeout=REPLY_TIMEOUT_SECONDS,
        )
        for original, result in zip(originals, results):
            assert result == original
            assert result is not original
        assert cloner.pending_count == 0
    finally:
        cloner.close()


@pytest.mark.asyncio
async def test_socketpair_cloner_handles_large_payloads() -> None:
    """Values larger than a socket buffer should still arrive intact."""
    cloner = SocketPairCloner()
    try:
        original: dict[str, object] = _sample_value()
        original["blob"] = b"z" * (4 * 1024 * 1024)
        copied: object = await asyncio.wait_for(cloner.clone_async(original), timeout=REPLY_TIMEOUT_SECONDS)
        _assert_deep_copy(original, copied)
        assert copied["blob"] == original["blob"]
    finally:
        cloner.close()


@pytest.mark.asyncio
async def test_socketpair_cloner_send_failure_leaves_no_entry() -> None:
    """An unpicklable value should fail at send time without leaking a pending entry."""
    cloner = SocketPairCloner()
    try:
        with pytest.raises(TypeError):
            await cloner.clone_async(threading.Lock())
        assert cloner.pending_count == 0
    finally:
        cloner.close()


@pytest.mark.asyncio
async def test_socketpair_cloner_rejects_undecodable_reply() -> None:
    """A reply that cannot be unpickled should reject only its own request."""
    cloner = SocketPairCloner()
    try:
        with pytest.raises(ValueError, match="cannot rebuild payload"):
            await asyncio.wait_for(cloner.clone_async(Unrebuildable()), timeout=REPLY_TIMEOUT_SECONDS)
        assert cloner.pending_count == 0
        assert await cloner.clone_async([1]) == [1]
    finally:
        cloner.close()


def test_socketpair_cloner_reattaches_to_each_event_loop() -> None:
    """A cloner outliving one event loop should keep working on the next one."""
    cloner = SocketPairCloner()
    try:
        first: object = asyncio.run(cloner.clone_async(["first"]))
        second: object = asyncio.run(cloner.clone_async(["second"]))
    finally:
        cloner.close()

    assert first == ["first"]
    assert second == ["second"]
    assert cloner.pending_count == 0


def test_socketpair_cloner_releases_closed_loops(monkeypatch: pytest.MonkeyPatch) -> None:
    """A closed loop should be collectable and its socket pair closed along with it."""
    created_sockets: list[socket.socket] = []
    make_socketpair = socket.socketpair

    def recording_socketpair() -> tuple[socket.socket, socket.socket]:
        """Create a socket pair and remember both ends.

        :returns: New socket pair.
        """
        pair: tuple[socket.socket, socket.socket] = make_socketpair()
        created_sockets.extend(pair)
        return pair

    cloner = SocketPairCloner()
    loop: asyncio.AbstractEventLoop = asyncio.new_event_loop()
    monkeypatch.setattr(socket, "socketpair", recording_socketpair)
    try:
        copied: object = loop.run_until_complete(cloner.clone_async(["collected"]))
        assert cloner.attached_loop_count == 1
    finally:
        monkeypatch.undo()
        loop.close()

    loop_ref: weakref.ref[asyncio.AbstractEventLoop] = weakref.ref(loop)
    del loop
    gc.collect()

    try:
        assert copied == ["collected"]
        assert loop_ref() is None
        assert cloner.attached_loop_count == 0
        assert len(created_sockets) == 2
        assert all(raw_socket.fileno() == -1 for raw_socket in created_sockets)
    finally:
        cloner.close()


@pytest.mark.asyncio
async def test_message_bus_cloner_claims_only_its_own_messages() -> None:
    """Claimed replies stop propagating; stray and spoofed traffic reaches other listeners."""
    cloner = MessageBusCloner()
    bus = get_message_bus()
    observed: list[object] = []

    def observe(event: MessageEvent) -> None:
        """Record everything that reaches a later listener.

        :param event: Dispatched event.
        """
        observed.append(event.data)

    try:
        warm_up: object = await asyncio.wait_for(cloner.clone_async("warm-up"), timeout=REPLY_TIMEOUT_SECONDS)
        assert warm_up == "warm-up"
        bus.add_listener(observe)

        stray_key: str = f"{cloner.key_prefix}999999"
        bus.post_message(["unrelated", 1])
        bus.post_message([stray_key, "spoofed"])
        bus.post_message({"shape": "not a pair"})

        original: dict[str, object] = _sample_value()
        copied: object = await asyncio.wait_for(cloner.clone_async(original), timeout=REPLY_TIMEOUT_SECONDS)
        _assert_deep_copy(original, copied)

        assert observed == [["unrelated", 1], [stray_key, "spoofed"], {"shape": "not a pair"}]
        assert cloner.pending_count == 0
    finally:
        bus.remove_listener(observe)
        cloner.close()


@pytest.mark.asyncio
async def test_message_bus_cloner_close_detaches_listener() -> None:
    """Closing the cloner should remove its listener from the bus."""
    cloner = MessageBusCloner()
    bus = get_message_bus()
    before: int = bus.listener_count
    await asyncio.wait_for(cloner.clone_async(1), timeout=REPLY_TIMEOUT_SECONDS)
    assert bus.listener_count == before + 1

    cloner.close()
    assert bus.listener_count == before


@pytest.mark.asyncio
async def test_message_bus_cloner_round_trips_concurrent_values() -> None:
    """Concurrent clones over the shared bus should each resolve with their own value."""
    cloner = MessageBusCloner()
    try:
        originals: list[list[int]] = [[index, index * 2] for index in range(10)]
        results: list[object] = await asyncio.wait_for(
            asyncio.gather(*(cloner.clone_async(value) for value in originals)),
            timeout=REPLY_TIMEOUT_SECONDS,
        )
        assert results == originals
        assert cloner.pending_count == 0
    finally:
        cloner.close()


def _pending_rows(store_path: Path) -> int:
    """Count rows left in the store table.

    :param store_path: Database path.
    :returns: Row count.
    """
    connection: sqlite3.Connection = sqlite3.connect(store_path)
    try:
        row: tuple[int] = connection.execute("SELECT COUNT(*) FROM pending").fetchone()
        return row[0]
    finally:
        connection.close()


@pytest.mark.asyncio
async def test_sqlite_cloner_round_trip_leaves_store_empty(tmp_path: Path) -> None:
    """The store round trip should copy the value and roll the row back."""
    store_path: Path = tmp_path / "clone-store" / "store.sqlite3"
    cloner = SqliteStoreCloner(str(store_path))
    try:
        original: dict[str, object] = {"a": [1, 2, None]}
        copied: object = await cloner.clone_async(original)

        assert copied == {"a": [1, 2, None]}
        assert copied is not original
        assert copied["a"] is not original["a"]
        assert _pending_rows(store_path) == 0
    finally:
        cloner.close()


@pytest.mark.asyncio
async def test_sqlite_cloner_drops_prior_schema_on_open(tmp_path: Path) -> None:
    """Opening the store should discard whatever tables an earlier run left behind."""
    store_path: Path = tmp_path / "store.sqlite3"
    seed: sqlite3.Connection = sqlite3.connect(store_path)
    seed.execute("CREATE TABLE legacy (id INTEGER)")
    seed.execute("INSERT INTO legacy (id) VALUES (1)")
    seed.execute("CREATE TABLE pending (stale TEXT)")
    seed.commit()
    seed.close()

    cloner = SqliteStoreCloner(str(store_path))
    try:
        await cloner.ready()
        check: sqlite3.Connection = sqlite3.connect(store_path)
        try:
            tables: list[tuple[str]] = check.execute(
                "SELECT name FROM sqlite_master WHERE type = 'table' ORDER BY name"
            ).fetchall()
        finally:
            check.close()
        assert tables == [("pending",)]
    finally:
        cloner.close()


@pytest.mark.asyncio
async def test_sqlite_cloner_recovers_after_primitive_failure() -> None:
    """A failed round trip should propagate and leave the store usable."""
    cloner = SqliteStoreCloner(":memory:")
    try:
        with pytest.raises(TypeError):
            await cloner.clone_async(threading.Lock())
        with pytest.raises(ValueError, match="cannot rebuild payload"):
            await cloner.clone_async(Unrebuildable())

        results: list[object] = await asyncio.gather(*(cloner.clone_async([index]) for index in range(5)))
        assert results == [[index] for index in range(5)]
    finally:
        cloner.close()


class ThreadRecordingStore(SqliteStoreCloner):
    """Store cloner that records which thread opened the database."""

    open_threads: list[int]

    def __init__(self, store_path: str) -> None:
        """Initialize the cloner.

        :param store_path: Database path.
        """
        super().__init__(store_path)
        self.open_threads = []

    def _open_store(self) -> sqlite3.Connection:
        """Record the opening thread, then open the store.

        :returns: Open connection.
        """
        self.open_threads.append(threading.get_ident())
        return super()._open_store()


@pytest.mark.asyncio
async def test_sqlite_cloner_opens_store_once_off_the_event_loop(tmp_path: Path) -> None:
    """Concurrent first clones should share one store opened in a worker thread."""
    cloner = ThreadRecordingStore(str(tmp_path / "store.sqlite3"))
    loop_thread: int = threading.get_ident()
    try:
        results: list[object] = await asyncio.wait_for(
            asyncio.gather(*(cloner.clone_async({"index": index}) for index in range(5))),
            timeout=REPLY_TIMEOUT_SECONDS,
        )
        assert results == [{"index": index} for index in range(5)]
        assert len(cloner.open_threads) == 1
        assert cloner.open_threads[0] != loop_thread
    finally:
        cloner.close()


def test_sqlite_cloner_serves_event_loops_on_other_threads(tmp_path: Path) -> None:
    """A store opened from one thread's loop should keep working from another thread's loop."""
    cloner = SqliteStoreCloner(str(tmp_path / "store.sqlite3"))
    outcomes: list[object] = []

    def clone_on_worker_thread() -> None:
        """Run one clone on a fresh event loop in this thread."""
        try:
            outcomes.append(asyncio.run(cloner.clone_async(["worker"])))
        except Exception as exc:
            outcomes.append(exc)

    try:
        first: object = asyncio.run(cloner.clone_async(["main"]))
        worker: threading.Thread = threading.Thread(target=clone_on_worker_thread)
        worker.start()
        worker.join(timeout=REPLY_TIMEOUT_SECONDS)
        assert worker.is_alive() is False
    finally:
        cloner.close()

    assert first == ["main"]
    assert outcomes == [["worker"]]
    assert _pending_rows(tmp_path / "store.sqlite3") == 0


def test_probes_have_no_side_effects() -> None:
    """Probing should not require constructing anything."""
    assert SocketPairCloner.probe() is True
    assert MessageBusCloner.probe() is True
    assert isinstance(SqliteStoreCloner.probe(), bool) is True
