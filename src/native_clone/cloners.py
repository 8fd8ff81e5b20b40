"""Clone strategies, one per native primitive."""

import abc
import asyncio
import copy
import importlib.util
import logging
import pickle
import socket
import threading
import weakref
from pathlib import Path
from typing import TYPE_CHECKING
from typing import ClassVar

from native_clone.channels import MessageBus
from native_clone.channels import MessageEvent
from native_clone.channels import SocketPairEndpoints
from native_clone.channels import close_raw_sockets
from native_clone.channels import get_message_bus
from native_clone.config import get_settings
from native_clone.correlation import CorrelationMultiplexer
from native_clone.correlation import CounterKeys
from native_clone.correlation import PrefixedKeys
from native_clone.errors import NativeCloneProtocolError
from native_clone.errors import UnsupportedOperationError

if TYPE_CHECKING:
    import sqlite3

logger = logging.getLogger("native_clone.cloners")


class Cloner(abc.ABC):
    """One way of performing a structured clone.

    ``probe`` is a class-level check with no side effects; constructing an
    instance is what opens channels or stores, so a cloner is only built
    once it has been selected.
    """

    name: ClassVar[str]
    warning: ClassVar[str | None] = None
    synchronous: ClassVar[bool] = False

    @classmethod
    @abc.abstractmethod
    def probe(cls) -> bool:
        """Report whether the environment likely supports this strategy.

        :returns: ``True`` when the underlying primitive appears to be available.
        """

    def is_inherently_synchronous(self) -> bool:
        """Report whether :meth:`clone_sync` can run without suspending.

        :returns: ``True`` for direct in-process strategies.
        """
        return self.synchronous

    def clone_sync(self, value: object) -> object:
        """Clone ``value`` without suspending.

        :param value: Value to clone.
        :returns: The clone.
        :raises UnsupportedOperationError: For strategies that need an asynchronous boundary.
        """
        raise UnsupportedOperationError(self.name, "clone_sync")

    @abc.abstractmethod
    async def clone_async(self, value: object) -> object:
        """Clone ``value``, possibly suspending until a boundary round trip completes.

        :param value: Value to clone.
        :returns: The clone.
        """

    def close(self) -> None:
        """Release resources opened by this strategy."""
        return None


class DirectCloner(Cloner):
    """Base for strategies that call a native primitive in-process."""

    synchronous: ClassVar[bool] = True

    async def clone_async(self, value: object) -> object:
        """Clone ``value`` through :meth:`clone_sync`.

        :param value: Value to clone.
        :returns: The clone.
        """
        return self.clone_sync(value)


class PickleCloner(DirectCloner):
    """Clone by serializing with :mod:`pickle` and loading the bytes back."""

    name: ClassVar[str] = "pickle"

    @classmethod
    def probe(cls) -> bool:
        """Report whether :mod:`pickle` can dump and load.

        :returns: ``True`` when both functions exist.
        """
        has_dumps: bool = callable(getattr(pickle, "dumps", None))
        has_loads: bool = callable(getattr(pickle, "loads", None))
        return has_dumps is True and has_loads is True

    def clone_sync(self, value: object) -> object:
        """Pickle ``value`` and load it back.

        :param value: Value to clone.
        :returns: The clone.
        """
        payload: bytes = pickle.dumps(value, protocol=pickle.HIGHEST_PROTOCOL)
        return pickle.loads(payload)


class DeepcopyCloner(DirectCloner):
    """Clone with :func:`copy.deepcopy`."""

    name: ClassVar[str] = "deepcopy"

    @classmethod
    def probe(cls) -> bool:
        """Report whether :func:`copy.deepcopy` exists.

        :returns: ``True`` when it is callable.
        """
        return callable(getattr(copy, "deepcopy", None))

    def clone_sync(self, value: object) -> object:
        """Deep-copy ``value``.

        :param value: Value to clone.
        :returns: The clone.
        """
        return copy.deepcopy(value)


class SocketPairCloner(Cloner):
    """Clone by sending pickled frames through a private socket pair.

    The pair is exclusively owned, so plain integer keys are enough. One pair
    is attached per event loop the cloner is used from; the pending table and
    key counter are shared by all of them. Loops are tracked weakly, and the
    raw sockets of a pair are closed once its loop is garbage collected.
    """

    name: ClassVar[str] = "socketpair"

    _multiplexer: CorrelationMultiplexer
    _endpoints_by_loop: "weakref.WeakKeyDictionary[asyncio.AbstractEventLoop, weakref.ref[SocketPairEndpoints]]"
    _opening_by_loop: "weakref.WeakKeyDictionary[asyncio.AbstractEventLoop, asyncio.Task[SocketPairEndpoints]]"

    def __init__(self) -> None:
        """Initialize the cloner; sockets are created on first use per loop."""
        self._multiplexer = CorrelationMultiplexer(self._transmit, CounterKeys())
        self._endpoints_by_loop = weakref.WeakKeyDictionary()
        self._opening_by_loop = weakref.WeakKeyDictionary()

    @classmethod
    def probe(cls) -> bool:
        """Report whether :func:`socket.socketpair` exists.

        :returns: ``True`` when socket pairs can be created.
        """
        return callable(getattr(socket, "socketpair", None))

    @property
    def pending_count(self) -> int:
        """Return the number of clones awaiting their reply frame.

        :returns: Pending-table size.
        """
        return self._multiplexer.pending_count

    @property
    def attached_loop_count(self) -> int:
        """Return how many live event loops have a socket pair attached.

        :returns: Number of tracked loops.
        """
        return len(self._endpoints_by_loop)

    async def clone_async(self, value: object) -> object:
        """Send ``value`` through the running loop's pair and await the reply frame.

        :param value: Value to clone.
        :returns: The clone.
        """
        await self._attach()
        return await self._multiplexer.send(value)

    def _endpoints_for(self, loop: asyncio.AbstractEventLoop) -> SocketPairEndpoints | None:
        """Return the live endpoints attached to ``loop``.

        :param loop: Event loop to look up.
        :returns: Endpoints, or ``None`` when the loop has none.
        """
        endpoints_ref: weakref.ref[SocketPairEndpoints] | None = self._endpoints_by_loop.get(loop)
        if endpoints_ref is None:
            return None
        return endpoints_ref()

    async def _attach(self) -> SocketPairEndpoints:
        """Return the endpoints for the running loop, opening them once.

        :returns: Attached endpoints.
        """
        loop: asyncio.AbstractEventLoop = asyncio.get_running_loop()
        self._discard_closed_loops()

        endpoints: SocketPairEndpoints | None = self._endpoints_for(loop)
        if endpoints is not None:
            return endpoints

        opening: asyncio.Task[SocketPairEndpoints] | None = self._opening_by_loop.get(loop)
        if opening is None:
            opening = loop.create_task(SocketPairEndpoints.open(self._on_frame))
            opening.add_done_callback(self._on_opened)
            self._opening_by_loop[loop] = opening
        return await asyncio.shield(opening)

    def _on_opened(self, opening: "asyncio.Task[SocketPairEndpoints]") -> None:
        """Move a finished opening task into the attached-endpoints table.

        :param opening: Task that ran :meth:`SocketPairEndpoints.open`.
        """
        loop: asyncio.AbstractEventLoop = opening.get_loop()
        if self._opening_by_loop.get(loop) is opening:
            del self._opening_by_loop[loop]
        if opening.cancelled() is True or opening.exception() is not None:
            return

        endpoints: SocketPairEndpoints = opening.result()
        self._endpoints_by_loop[loop] = weakref.ref(endpoints)
        weakref.finalize(loop, close_raw_sockets, endpoints.sockets)

    def _discard_closed_loops(self) -> None:
        """Drop endpoints and openings whose event loop has been closed."""
        for loop in list(self._opening_by_loop.keys()):
            if loop.is_closed() is True:
                del self._opening_by_loop[loop]
        for loop in list(self._endpoints_by_loop.keys()):
            if loop.is_closed() is False:
                continue
            endpoints: SocketPairEndpoints | None = self._endpoints_for(loop)
            del self._endpoints_by_loop[loop]
            if endpoints is not None:
                endpoints.discard()

    def _transmit(self, key: object, value: object) -> None:
        """Write one request frame on the running loop's pair.

        :param key: Integer correlation key.
        :param value: Value to pickle into the frame.
        :raises NativeCloneProtocolError: If the key is not an integer or no pair is attached.
        """
        if isinstance(key, int) is False:
            raise NativeCloneProtocolError(f"Socket pair keys must be integers, got {key!r}")
        payload: bytes = pickle.dumps(value, protocol=pickle.HIGHEST_PROTOCOL)
        endpoints: SocketPairEndpoints | None = self._endpoints_for(asyncio.get_running_loop())
        if endpoints is None:
            raise NativeCloneProtocolError("No socket pair is attached to the running event loop")
        endpoints.post(key, payload)

    def _on_frame(self, key: int, payload: bytes) -> None:
        """Resolve the request a reply frame belongs to.

        :param key: Correlation key from the frame header.
        :param payload: Pickled reply value.
        """
        try:
            value: object = pickle.loads(payload)
        except Exception as exc:
            self._multiplexer.fail(key, exc)
            return
        self._multiplexer.deliver((key, value))

    def close(self) -> None:
        """Close every attached pair and cancel pairs still being opened."""
        for opening in list(self._opening_by_loop.values()):
            opening.cancel()
        self._opening_by_loop.clear()

        for loop in list(self._endpoints_by_loop.keys()):
            endpoints: SocketPairEndpoints | None = self._endpoints_for(loop)
            if endpoints is None:
                continue
            if loop.is_closed() is True:
                endpoints.discard()
            else:
                endpoints.close()
        self._endpoints_by_loop.clear()


class MessageBusCloner(Cloner):
    """Clone by posting ``[key, value]`` on the loop-wide :class:`MessageBus`.

    The bus carries unrelated traffic, so keys carry a per-instance prefix and
    the listener stops propagation of every message it claims.
    """

    name: ClassVar[str] = "message_bus"
    warning: ClassVar[str | None] = (
        "Dispatches message events on the loop-wide message bus; other listeners may react to them."
    )

    _multiplexer: CorrelationMultiplexer
    _keys: PrefixedKeys
    _attached_buses: "weakref.WeakSet[MessageBus]"

    def __init__(self) -> None:
        """Initialize the cloner; listeners are attached on first use per loop."""
        self._keys = PrefixedKeys()
        self._multiplexer = CorrelationMultiplexer(self._transmit, self._keys)
        self._attached_buses = weakref.WeakSet()

    @classmethod
    def probe(cls) -> bool:
        """Report whether the message bus can both listen and post.

        :returns: ``True`` when both operations exist.
        """
        can_listen: bool = callable(getattr(MessageBus, "add_listener", None))
        can_post: bool = callable(getattr(MessageBus, "post_message", None))
        return can_listen is True and can_post is True

    @property
    def key_prefix(self) -> str:
        """Return the prefix of every key this cloner posts.

        :returns: Key prefix.
        """
        return self._keys.prefix

    @property
    def pending_count(self) -> int:
        """Return the number of clones awaiting their message.

        :returns: Pending-table size.
        """
        return self._multiplexer.pending_count

    async def clone_async(self, value: object) -> object:
        """Post ``value`` on the running loop's bus and await its copy.

        :param value: Value to clone.
        :returns: The clone.
        """
        bus: MessageBus = get_message_bus()
        is_attached: bool = bus in self._attached_buses
        if is_attached is False:
            bus.add_listener(self._on_message)
            self._attached_buses.add(bus)
        return await self._multiplexer.send(value)

    def _transmit(self, key: object, value: object) -> None:
        """Post one ``[key, value]`` request.

        :param key: Prefixed correlation key.
        :param value: Value to clone.
        """
        get_message_bus().post_message([key, value])

    def _on_message(self, event: MessageEvent) -> None:
        """Claim messages carrying one of this cloner's keys.

        :param event: Dispatched bus event.
        """
        claimed: bool = self._multiplexer.deliver(event.data)
        if claimed is True:
            event.stop_immediate_propagation()

    def close(self) -> None:
        """Detach the listener from every bus it was added to."""
        for bus in list(self._attached_buses):
            bus.remove_listener(self._on_message)
        self._attached_buses.clear()


class SqliteStoreCloner(Cloner):
    """Clone by writing a value into a sqlite table and reading it back.

    The store is opened lazily and every clone awaits that readiness first.
    Opening drops every existing table, and each round trip is rolled back,
    so no cloned data is ever left in the database. Store work runs in worker
    threads and is serialized on one shared connection, so the cloner can be
    used from any event loop in the process.
    """

    name: ClassVar[str] = "sqlite"
    warning: ClassVar[str | None] = "Creates an empty sqlite database at the configured store path."
    TABLE_NAME: ClassVar[str] = "pending"
    ROW_KEY: ClassVar[int] = 1

    _store_path: str
    _connection: "sqlite3.Connection | None"
    _store_lock: threading.Lock

    def __init__(self, store_path: str | None = None) -> None:
        """Initialize the cloner.

        :param store_path: Database path; defaults to the configured ``store_path``.
        """
        if store_path is None:
            store_path = get_settings().store_path
        self._store_path = store_path
        self._connection = None
        self._store_lock = threading.Lock()

    @classmethod
    def probe(cls) -> bool:
        """Report whether the sqlite extension module is installed.

        :returns: ``True`` when ``_sqlite3`` can be imported.
        """
        return importlib.util.find_spec("_sqlite3") is not None

    @property
    def store_path(self) -> str:
        """Return the database path.

        :returns: Filesystem path or ``":memory:"``.
        """
        return self._store_path

    async def ready(self) -> "sqlite3.Connection":
        """Open the store on first use without blocking the event loop.

        :returns: Open connection in autocommit mode.
        """
        return await asyncio.to_thread(self._ensure_store)

    def _ensure_store(self) -> "sqlite3.Connection":
        """Return the open connection, opening the store exactly once.

        :returns: Open connection.
        """
        with self._store_lock:
            if self._connection is None:
                self._connection = self._open_store()
            return self._connection

    def _open_store(self) -> "sqlite3.Connection":
        """Connect, drop every existing table and create the value table.

        :returns: Connection usable from any thread.
        """
        import sqlite3

        if self._store_path != ":memory:":
            Path(self._store_path).parent.mkdir(parents=True, exist_ok=True)

        connection: sqlite3.Connection = sqlite3.connect(
            self._store_path,
            isolation_level=None,
            check_same_thread=False,
        )
        try:
            rows: list[tuple[str]] = connection.execute(
                "SELECT name FROM sqlite_master WHERE type = 'table' AND name NOT LIKE 'sqlite_%'"
            ).fetchall()
            for (table_name,) in rows:
                quoted_name: str = table_name.replace('"', '""')
                connection.execute(f'DROP TABLE "{quoted_name}"')
            connection.execute(f"CREATE TABLE {self.TABLE_NAME} (key INTEGER PRIMARY KEY, value BLOB NOT NULL)")
        except Exception:
            connection.close()
            raise

        logger.debug(
            "Opened sqlite clone store",
            extra={"store_path": self._store_path, "dropped_tables": len(rows)},
        )
        return connection

    async def clone_async(self, value: object) -> object:
        """Round-trip ``value`` through the store inside a rolled-back transaction.

        :param value: Value to clone.
        :returns: The clone.
        """
        await self.ready()
        payload: bytes = pickle.dumps(value, protocol=pickle.HIGHEST_PROTOCOL)
        stored: bytes = await asyncio.to_thread(self._round_trip, payload)
        return pickle.loads(stored)

    def _round_trip(self, payload: bytes) -> bytes:
        """Insert ``payload`` under the fixed key, read it back and roll back.

        :param payload: Pickled value.
        :returns: Bytes read back from the store.
        :raises NativeCloneProtocolError: If the store was closed or returned no row.
        """
        with self._store_lock:
            connection: sqlite3.Connection | None = self._connection
            if connection is None:
                raise NativeCloneProtocolError("sqlite store was closed before the clone ran")

            connection.execute("BEGIN")
            try:
                connection.execute(
                    f"INSERT INTO {self.TABLE_NAME} (key, value) VALUES (?, ?)",
                    (self.ROW_KEY, payload),
                )
                row: tuple[bytes] | None = connection.execute(
                    f"SELECT value FROM {self.TABLE_NAME} WHERE key = ?",
                    (self.ROW_KEY,),
                ).fetchone()
            finally:
                connection.execute("ROLLBACK")

        if row is None:
            raise NativeCloneProtocolError("sqlite store returned no row for the value just inserted")
        return row[0]

    def close(self) -> None:
        """Close the store connection if it was opened."""
        with self._store_lock:
            connection: sqlite3.Connection | None = self._connection
            self._connection = None
        if connection is not None:
            connection.close()
