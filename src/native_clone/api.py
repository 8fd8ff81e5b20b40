"""User-facing API entrypoints for native_clone."""

import atexit
import threading
from typing import TypeVar
from typing import cast

from native_clone.cloners import Cloner
from native_clone.errors import NoNativeImplementationError
from native_clone.registry import Selection
from native_clone.registry import select_cloners

T = TypeVar("T")

_DEFAULT_CLONER_LOCK: threading.Lock = threading.Lock()
_DEFAULT_CLONER: "NativeCloner | None" = None


class NativeCloner:
    """Route clone calls to the strategies of one :class:`Selection`."""

    _selection: Selection

    def __init__(self, selection: Selection) -> None:
        """Initialize a facade.

        :param selection: Frozen strategy selection to delegate to.
        """
        self._selection = selection

    @property
    def selection(self) -> Selection:
        """Return the selection this facade delegates to.

        :returns: Frozen selection.
        """
        return self._selection

    def clone_sync(self, value: T) -> T:
        """Deep-clone ``value`` with the selected synchronous strategy.

        :param value: Value to clone.
        :returns: The clone.
        :raises NoNativeImplementationError: If no synchronous strategy was selected.
        """
        cloner: Cloner | None = self._selection.sync_cloner
        if cloner is None:
            raise NoNativeImplementationError()
        return cast(T, cloner.clone_sync(value))

    async def clone_async(self, value: T) -> T:
        """Deep-clone ``value`` with the selected asynchronous strategy.

        Without one, this wraps :meth:`clone_sync`, including its error.

        :param value: Value to clone.
        :returns: The clone.
        :raises NoNativeImplementationError: If no strategy was selected for either mode.
        """
        cloner: Cloner | None = self._selection.async_cloner
        if cloner is None:
            return self.clone_sync(value)
        return cast(T, await cloner.clone_async(value))

    def can_clone_sync(self) -> bool:
        """Report whether a synchronous strategy was selected.

        :returns: ``True`` when :meth:`clone_sync` has a native backend.
        """
        return self._selection.sync_cloner is not None

    def can_clone_async(self) -> bool:
        """Report whether :meth:`clone_async` has a native backend.

        :returns: ``True`` when an asynchronous or synchronous strategy was selected.
        """
        if self._selection.async_cloner is not None:
            return True
        return self.can_clone_sync()


def _default_cloner() -> NativeCloner:
    """Return the process-wide facade, selecting strategies on first use.

    :returns: Process-wide facade.
    """
    global _DEFAULT_CLONER
    cloner: NativeCloner | None = _DEFAULT_CLONER
    if cloner is not None:
        return cloner

    with _DEFAULT_CLONER_LOCK:
        if _DEFAULT_CLONER is None:
            selection: Selection = select_cloners()
            atexit.register(selection.close)
            _DEFAULT_CLONER = NativeCloner(selection)
        return _DEFAULT_CLONER


def get_selection() -> Selection:
    """Return the process-wide strategy selection.

    :returns: Frozen selection, made on the first call.
    """
    return _default_cloner().selection


def clone_sync(value: T) -> T:
    """Deep-clone ``value`` synchronously with the native strategy of this process.

    :param value: Value to clone.
    :returns: The clone.
    :raises NoNativeImplementationError: If no synchronous strategy is available.
    """
    return _default_cloner().clone_sync(value)


async def clone_async(value: T) -> T:
    """Deep-clone ``value`` with the native asynchronous strategy of this process.

    :param value: Value to clone.
    :returns: The clone.
    :raises NoNativeImplementationError: If no strategy is available.
    """
    return await _default_cloner().clone_async(value)


def can_clone_sync() -> bool:
    """Report whether :func:`clone_sync` has a native backend in this process.

    :returns: Capability flag, fixed for the process lifetime.
    """
    return _default_cloner().can_clone_sync()


def can_clone_async() -> bool:
    """Report whether :func:`clone_async` has a native backend in this process.

    :returns: Capability flag, fixed for the process lifetime.
    """
    return _default_cloner().can_clone_async()
