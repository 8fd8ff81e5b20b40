"""Environment-driven configuration for native_clone."""

import tempfile
from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic import computed_field
from pydantic_settings import BaseSettings
from pydantic_settings import SettingsConfigDict


def _default_store_path() -> str:
    """Return the default location of the sqlite clone store.

    :returns: Filesystem path inside the system temporary directory.
    """
    return str(Path(tempfile.gettempdir()) / "native-clone" / "store.sqlite3")


class NativeCloneSettings(BaseSettings):
    """Settings loaded from ``NATIVE_CLONE_*`` environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="NATIVE_CLONE_",
        case_sensitive=False,
        extra="ignore",
    )

    disabled_strategies: str = Field(
        default="",
        description="Comma-separated strategy names skipped during selection, as if their probe failed",
    )
    store_path: str = Field(
        default_factory=_default_store_path,
        description="sqlite database used by the store strategy (':memory:' accepted)",
    )
    select_on_import: bool = Field(
        default=False,
        description="Run strategy selection when the package is imported",
    )

    @computed_field
    @property
    def disabled_strategy_names(self) -> list[str]:
        """Parse ``disabled_strategies`` into a list of names.

        :returns: Stripped, non-empty strategy names.
        """
        if not self.disabled_strategies:
            return []
        return [name.strip() for name in self.disabled_strategies.split(",") if name.strip()]


@lru_cache
def get_settings() -> NativeCloneSettings:
    """Return the cached process-wide settings.

    :returns: Loaded settings.
    """
    return NativeCloneSettings()
