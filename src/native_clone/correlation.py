"""Request/response correlation over unaddressed asynchronous channels.

A boundary such as a socket pair or a shared message bus delivers replies
without any notion of which call they answer, and may deliver them in a
different order than the requests were sent. :class:`CorrelationMultiplexer`
tags every outgoing value with a fresh key, parks a future under that key, and
resolves the future when a reply carrying the same key comes back.
"""

import asyncio
import itertools
import random
import time
from collections.abc import Callable

KEY_PREFIX: str = "native-clone"
Transmit = Callable[[object, object], None]


class CounterKeys:
    """Monotonic integer keys for a channel owned by one multiplexer."""

    _counter: "itertools.count[int]"

    def __init__(self) -> None:
        """Initialize a counter starting at zero."""
        self._counter = itertools.count()

    def next_key(self) -> int:
        """Return the next unused key.

        :returns: Integer key.
        """
        return next(self._counter)

    def owns(self, key: object) -> bool:
        """Report whether ``key`` has the shape this source produces.

        :param key: Candidate key from an inbound message.
        :returns: ``True`` for plain integers.
        """
        if isinstance(key, bool) is True:
            return False
        return isinstance(key, int)


class PrefixedKeys:
    """String keys with a per-instance prefix, for channels shared with other traffic.

    The prefix mixes a random draw with the wall clock. It keeps independently
    created instances apart in practice but is not a uniqueness guarantee.
    """

    _prefix: str
    _counter: "itertools.count[int]"

    def __init__(self) -> None:
        """Initialize the key source with a fresh prefix."""
        seed: int = (int(random.random() * 2147483647) ^ int(time.time() * 1000)) & 0x7FFFFFFF
        self._prefix = f"{KEY_PREFIX}-{seed}-"
        self._counter = itertools.count()

    @property
    def prefix(self) -> str:
        """Return the prefix shared by every key of this source.

        :returns: Key prefix, including the trailing separator.
        """
        return self._prefix

    def next_key(self) -> str:
        """Return the next unused key.

        :returns: Prefixed string key.
        """
        return f"{self._prefix}{next(self._counter)}"

    def owns(self, key: object) -> bool:
        """Report whether ``key`` was produced by this source.

        :param key: Candidate key from an inbound message.
        :returns: ``True`` when ``key`` is a string with this source's prefix.
        """
        if isinstance(key, str) is False:
            return False
        return key.startswith(self._prefix)


KeySource = CounterKeys | PrefixedKeys


class CorrelationMultiplexer:
    """Match out-of-order replies to their requests by key.

    The pending table holds one future per in-flight request. An entry is
    inserted by :meth:`send` and removed by the first matching :meth:`deliver`
    or :meth:`fail`. There is no timeout: a request whose reply never arrives
    stays pending.
    """

    _transmit: Transmit
    _keys: KeySource
    _pending: dict[object, "asyncio.Future[object]"]

    def __init__(self, transmit: Transmit, keys: KeySource | None = None) -> None:
        """Initialize a multiplexer.

        :param transmit: Callable that puts ``(key, value)`` on the outgoing side.
        :param keys: Key source; defaults to :class:`CounterKeys`.
        """
        self._transmit = transmit
        if keys is None:
            self._keys = CounterKeys()
        else:
            self._keys = keys
        self._pending = {}

    @property
    def pending_count(self) -> int:
        """Return the number of requests still awaiting a reply.

        :returns: Pending-table size.
        """
        return len(self._pending)

    def owns(self, key: object) -> bool:
        """Report whether ``key`` has the shape of this multiplexer's keys.

        :param key: Candidate key.
        :returns: ``True`` when the key source recognizes ``key``.
        """
        return self._keys.owns(key)

    def send(self, value: object) -> "asyncio.Future[object]":
        """Transmit ``value`` under a fresh key and return a future for the reply.

        Must be called with a running event loop. If transmission raises, the
        entry is dropped and the error propagates.

        :param value: Value to send across the boundary.
        :returns: Future resolved with the correlated reply value.
        """
        loop: asyncio.AbstractEventLoop = asyncio.get_running_loop()
        key: object = self._keys.next_key()
        continuation: asyncio.Future[object] = loop.create_future()
        self._pending[key] = continuation
        try:
            self._transmit(key, value)
        except Exception:
            self._pending.pop(key, None)
            raise
        return continuation

    def deliver(self, message: object) -> bool:
        """Route one inbound ``(key, value)`` message to its waiter.

        Messages that are not key/value pairs, or whose key is foreign or no
        longer pending, are ignored.

        :param message: Inbound message from the channel.
        :returns: ``True`` when the message was claimed by a pending request.
        """
        if isinstance(message, (tuple, list)) is False:
            return False
        if len(message) != 2:
            return False

        key: object = message[0]
        value: object = message[1]
        continuation: asyncio.Future[object] | None = self._claim(key)
        if continuation is None:
            return False

        # A cancelled waiter still consumes its entry.
        if continuation.done() is False:
            continuation.set_result(value)
        return True

    def fail(self, key: object, error: BaseException) -> bool:
        """Reject the request pending under ``key`` with ``error``.

        :param key: Key of the reply that could not be decoded.
        :param error: Error raised by the primitive.
        :returns: ``True`` when a pending request was rejected.
        """
        continuation: asyncio.Future[object] | None = self._claim(key)
        if continuation is None:
            return False

        if continuation.done() is False:
            continuation.set_exception(error)
        return True

    def _claim(self, key: object) -> "asyncio.Future[object] | None":
        """Remove and return the continuation for ``key`` if this multiplexer owns it.

        :param key: Candidate key.
        :returns: Pending future, or ``None``.
        """
        is_owned: bool = self._keys.owns(key)
        if is_owned is False:
            return None
        return self._pending.pop(key, None)
