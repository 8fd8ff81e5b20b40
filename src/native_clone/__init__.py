"""Public package API for native_clone."""

from native_clone.api import NativeCloner
from native_clone.api import can_clone_async
from native_clone.api import can_clone_sync
from native_clone.api import clone_async
from native_clone.api import clone_sync
from native_clone.api import get_selection
from native_clone.config import get_settings
from native_clone.errors import NativeCloneError
from native_clone.errors import NativeCloneProtocolError
from native_clone.errors import NoNativeImplementationError
from native_clone.errors import UnsupportedOperationError
from native_clone.registry import Selection

__all__: list[str] = [
    "NativeCloner",
    "Selection",
    "can_clone_async",
    "can_clone_sync",
    "clone_async",
    "clone_sync",
    "get_selection",
    "NativeCloneError",
    "NativeCloneProtocolError",
    "NoNativeImplementationError",
    "UnsupportedOperationError",
]

if get_settings().select_on_import is True:
    get_selection()
