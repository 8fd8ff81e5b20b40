"""Host boundaries used by the channel-based clone strategies."""

import asyncio
import logging
import pickle
import socket
import struct
import threading
import weakref
from collections.abc import Callable

from native_clone.errors import NativeCloneProtocolError

logger = logging.getLogger("native_clone.channels")

_FRAME_HEADER: struct.Struct = struct.Struct("!QI")
_MAX_FRAME_PAYLOAD: int = 0xFFFFFFFF
FrameHandler = Callable[[int, bytes], None]


def encode_frame(key: int, payload: bytes) -> bytes:
    """Prefix ``payload`` with its correlation key and length.

    :param key: Non-negative correlation key.
    :param payload: Pickled value bytes.
    :returns: Wire frame.
    :raises NativeCloneProtocolError: If the key or payload does not fit the header.
    """
    if key < 0:
        raise NativeCloneProtocolError(f"Frame key must be non-negative, got {key}")
    payload_length: int = len(payload)
    if payload_length > _MAX_FRAME_PAYLOAD:
        raise NativeCloneProtocolError(f"Frame payload too large: {payload_length} bytes")
    return _FRAME_HEADER.pack(key, payload_length) + payload


class FrameDecoder:
    """Reassemble frames from an arbitrarily chunked byte stream."""

    _buffer: bytearray

    def __init__(self) -> None:
        """Initialize an empty decoder."""
        self._buffer = bytearray()

    @property
    def buffered(self) -> int:
        """Return the number of bytes waiting for the rest of their frame.

        :returns: Buffered byte count.
        """
        return len(self._buffer)

    def feed(self, data: bytes) -> list[tuple[int, bytes]]:
        """Consume ``data`` and return every frame it completes.

        :param data: Newly received bytes.
        :returns: Completed ``(key, payload)`` frames in arrival order.
        """
        self._buffer.extend(data)
        frames: list[tuple[int, bytes]] = []
        header_size: int = _FRAME_HEADER.size
        while len(self._buffer) >= header_size:
            key, payload_length = _FRAME_HEADER.unpack_from(self._buffer, 0)
            frame_end: int = header_size + payload_length
            if len(self._buffer) < frame_end:
                break
            payload: bytes = bytes(self._buffer[header_size:frame_end])
            del self._buffer[:frame_end]
            frames.append((key, payload))
        return frames


def close_raw_sockets(sockets: tuple[socket.socket, ...]) -> None:
    """Close sockets whose transports can no longer be closed through a loop.

    :param sockets: Raw sockets to close.
    """
    for raw_socket in sockets:
        raw_socket.close()


class _FrameReceiver(asyncio.Protocol):
    """Protocol for the inbound end of a socket pair."""

    _decoder: FrameDecoder
    _on_frame: FrameHandler
    owner: "SocketPairEndpoints | None"

    def __init__(self, on_frame: FrameHandler) -> None:
        """Initialize the receiver.

        :param on_frame: Handler called with each decoded frame.
        """
        self._decoder = FrameDecoder()
        self._on_frame = on_frame
        self.owner = None

    def data_received(self, data: bytes) -> None:
        """Decode frames from ``data`` and hand each one to the handler.

        :param data: Bytes read from the inbound socket.
        """
        for key, payload in self._decoder.feed(data):
            self._on_frame(key, payload)

    def connection_lost(self, exc: Exception | None) -> None:
        """Report a partial frame left behind when the pair closes.

        :param exc: Connection error, or ``None`` on a normal close.
        """
        if self._decoder.buffered > 0:
            logger.debug(
                "Socket pair closed with a partial frame buffered",
                extra={"buffered_bytes": self._decoder.buffered},
            )


class SocketPairEndpoints:
    """Both ends of one private socket pair, attached to one event loop.

    Frames written on the outbound end arrive on the inbound end and are
    handed to the frame handler given to :meth:`open`.
    """

    _outbound: asyncio.WriteTransport
    _inbound: asyncio.BaseTransport
    _sockets: tuple[socket.socket, socket.socket]

    def __init__(
        self,
        outbound: asyncio.WriteTransport,
        inbound: asyncio.BaseTransport,
        sockets: tuple[socket.socket, socket.socket],
    ) -> None:
        """Initialize from already attached transports.

        :param outbound: Transport frames are written to.
        :param inbound: Transport frames are read from.
        :param sockets: Raw ``(outbound, inbound)`` sockets backing the transports.
        """
        self._outbound = outbound
        self._inbound = inbound
        self._sockets = sockets

    @classmethod
    async def open(cls, on_frame: FrameHandler) -> "SocketPairEndpoints":
        """Create a socket pair and attach both ends to the running loop.

        The inbound protocol holds the returned endpoints, so they stay alive
        for as long as the loop is reading from them.

        :param on_frame: Handler called with each inbound ``(key, payload)`` frame.
        :returns: Attached endpoints.
        """
        loop: asyncio.AbstractEventLoop = asyncio.get_running_loop()
        outbound_socket, inbound_socket = socket.socketpair()
        receiver: _FrameReceiver = _FrameReceiver(on_frame)
        inbound_transport: asyncio.BaseTransport | None = None
        try:
            inbound_transport, _ = await loop.create_connection(lambda: receiver, sock=inbound_socket)
            outbound_transport, _ = await loop.create_connection(asyncio.Protocol, sock=outbound_socket)
        except Exception:
            if inbound_transport is not None:
                inbound_transport.close()
            else:
                inbound_socket.close()
            outbound_socket.close()
            raise

        endpoints: SocketPairEndpoints = cls(outbound_transport, inbound_transport, (outbound_socket, inbound_socket))
        receiver.owner = endpoints
        logger.debug("Attached socket pair to event loop", extra={"loop_id": id(loop)})
        return endpoints

    @property
    def sockets(self) -> tuple[socket.socket, socket.socket]:
        """Return the raw ``(outbound, inbound)`` sockets.

        :returns: Socket tuple.
        """
        return self._sockets

    def post(self, key: int, payload: bytes) -> None:
        """Write one frame on the outbound end.

        :param key: Correlation key.
        :param payload: Pickled value bytes.
        """
        self._outbound.write(encode_frame(key, payload))

    def close(self) -> None:
        """Close both transports through their event loop."""
        self._outbound.close()
        self._inbound.close()

    def discard(self) -> None:
        """Close the raw sockets after their event loop has already closed."""
        close_raw_sockets(self._sockets)


class MessageEvent:
    """One message dispatched by a :class:`MessageBus`."""

    data: object
    _propagation_stopped: bool

    def __init__(self, data: object) -> None:
        """Initialize an event.

        :param data: Deserialized message data.
        """
        self.data = data
        self._propagation_stopped = False

    @property
    def propagation_stopped(self) -> bool:
        """Report whether a listener stopped further dispatch.

        :returns: ``True`` once :meth:`stop_immediate_propagation` was called.
        """
        return self._propagation_stopped

    def stop_immediate_propagation(self) -> None:
        """Prevent listeners registered after the current one from seeing this event."""
        self._propagation_stopped = True


MessageListener = Callable[[MessageEvent], None]


class MessageBus:
    """Broadcast bus shared by everything running on one event loop.

    :meth:`post_message` pickles the message immediately, then dispatches a
    fresh copy on a later loop iteration to every listener in registration
    order. Any code on the loop may listen or post, so listeners must ignore
    traffic they do not recognize.
    """

    _listeners: list[MessageListener]

    def __init__(self) -> None:
        """Initialize a bus with no listeners."""
        self._listeners = []

    @property
    def listener_count(self) -> int:
        """Return the number of registered listeners.

        :returns: Listener count.
        """
        return len(self._listeners)

    def add_listener(self, listener: MessageListener) -> None:
        """Register a listener.

        :param listener: Callable receiving each :class:`MessageEvent`.
        """
        self._listeners.append(listener)

    def remove_listener(self, listener: MessageListener) -> None:
        """Unregister a listener; unknown listeners are ignored.

        :param listener: Previously registered listener.
        """
        try:
            self._listeners.remove(listener)
        except ValueError:
            return

    def post_message(self, data: object) -> None:
        """Serialize ``data`` and schedule its dispatch on the running loop.

        :param data: Message to broadcast.
        :raises pickle.PicklingError: If ``data`` cannot be serialized.
        """
        loop: asyncio.AbstractEventLoop = asyncio.get_running_loop()
        payload: bytes = pickle.dumps(data, protocol=pickle.HIGHEST_PROTOCOL)
        loop.call_soon(self._dispatch, payload)

    def _dispatch(self, payload: bytes) -> None:
        """Deliver a fresh copy of one posted message to each listener.

        Errors from deserialization or from a listener go to the loop's
        exception handler; dispatch stops once a listener stops propagation.

        :param payload: Pickled message bytes.
        """
        loop: asyncio.AbstractEventLoop = asyncio.get_running_loop()
        try:
            data: object = pickle.loads(payload)
        except Exception as exc:
            loop.call_exception_handler(
                {
                    "message": "MessageBus could not deserialize a posted message",
                    "exception": exc,
                }
            )
            return

        event: MessageEvent = MessageEvent(data)
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as exc:
                loop.call_exception_handler(
                    {
                        "message": "MessageBus listener raised",
                        "exception": exc,
                    }
                )
            if event.propagation_stopped is True:
                break


_MESSAGE_BUS_LOCK: threading.Lock = threading.Lock()
_MESSAGE_BUSES_BY_LOOP: "weakref.WeakKeyDictionary[asyncio.AbstractEventLoop, MessageBus]" = (
    weakref.WeakKeyDictionary()
)


def get_message_bus() -> MessageBus:
    """Return the message bus of the running event loop, creating it on first use.

    :returns: Loop-scoped message bus.
    :raises RuntimeError: If no event loop is running.
    """
    loop: asyncio.AbstractEventLoop = asyncio.get_running_loop()
    with _MESSAGE_BUS_LOCK:
        bus: MessageBus | None = _MESSAGE_BUSES_BY_LOOP.get(loop)
        if bus is None:
            bus = MessageBus()
            _MESSAGE_BUSES_BY_LOOP[loop] = bus
        return bus
