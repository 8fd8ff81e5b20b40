"""Strategy registries and the one-shot selector."""

import logging
from collections.abc import Callable
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Literal

from native_clone.cloners import Cloner
from native_clone.cloners import DeepcopyCloner
from native_clone.cloners import MessageBusCloner
from native_clone.cloners import PickleCloner
from native_clone.cloners import SocketPairCloner
from native_clone.cloners import SqliteStoreCloner
from native_clone.config import get_settings

logger = logging.getLogger("native_clone.selection")

CallMode = Literal["sync", "async"]


@dataclass(frozen=True)
class StrategyDescriptor:
    """A candidate strategy: a pure probe plus a factory that may have side effects."""

    name: str
    probe: Callable[[], bool]
    factory: Callable[[], Cloner]
    synchronous: bool = False
    warning: str | None = None

    @classmethod
    def for_cloner(cls, cloner_type: type[Cloner]) -> "StrategyDescriptor":
        """Describe a :class:`Cloner` subclass.

        :param cloner_type: Concrete cloner class.
        :returns: Descriptor using the class probe and constructor.
        """
        return cls(
            name=cloner_type.name,
            probe=cloner_type.probe,
            factory=cloner_type,
            synchronous=cloner_type.synchronous,
            warning=cloner_type.warning,
        )


SYNC_REGISTRY: tuple[StrategyDescriptor, ...] = (
    StrategyDescriptor.for_cloner(PickleCloner),
    StrategyDescriptor.for_cloner(DeepcopyCloner),
)

ASYNC_REGISTRY: tuple[StrategyDescriptor, ...] = (
    StrategyDescriptor.for_cloner(SocketPairCloner),
    StrategyDescriptor.for_cloner(SqliteStoreCloner),
    StrategyDescriptor.for_cloner(MessageBusCloner),
)


@dataclass(frozen=True)
class Selection:
    """The strategies chosen for each call mode; immutable once built."""

    sync_cloner: Cloner | None = None
    async_cloner: Cloner | None = None

    @property
    def sync_name(self) -> str | None:
        """Return the name of the selected sync strategy.

        :returns: Strategy name, or ``None`` when nothing was selected.
        """
        if self.sync_cloner is None:
            return None
        return self.sync_cloner.name

    @property
    def async_name(self) -> str | None:
        """Return the name of the selected async strategy.

        :returns: Strategy name, or ``None`` when nothing was selected.
        """
        if self.async_cloner is None:
            return None
        return self.async_cloner.name

    def close(self) -> None:
        """Release resources held by the selected cloners."""
        if self.async_cloner is not None:
            self.async_cloner.close()
        if self.sync_cloner is not None and self.sync_cloner is not self.async_cloner:
            self.sync_cloner.close()


def _check_sync_registry(registry: tuple[StrategyDescriptor, ...]) -> None:
    """Reject sync candidates that cannot run without suspending.

    :param registry: Sync descriptors in priority order.
    :raises ValueError: If any descriptor is not synchronous.
    """
    for descriptor in registry:
        if descriptor.synchronous is False:
            raise ValueError(f"Strategy {descriptor.name!r} cannot be registered for synchronous cloning")


def _select_first(
    registry: Iterable[StrategyDescriptor],
    mode: CallMode,
    disabled: frozenset[str],
) -> Cloner | None:
    """Instantiate the first descriptor whose probe passes.

    :param registry: Descriptors in priority order.
    :param mode: Call mode being filled, for logging.
    :param disabled: Names to skip as though their probe failed.
    :returns: The adopted cloner, or ``None`` when no probe passed.
    """
    for descriptor in registry:
        is_disabled: bool = descriptor.name in disabled
        if is_disabled is True:
            logger.debug(
                "Skipping disabled clone strategy",
                extra={"strategy": descriptor.name, "mode": mode},
            )
            continue

        is_supported: bool = descriptor.probe()
        if is_supported is False:
            logger.debug(
                "Clone strategy probe failed",
                extra={"strategy": descriptor.name, "mode": mode},
            )
            continue

        cloner: Cloner = descriptor.factory()
        logger.info(
            f"Selected {descriptor.name} strategy for {mode} cloning",
            extra={
                "strategy": descriptor.name,
                "mode": mode,
                "side_effect": descriptor.warning,
            },
        )
        return cloner

    logger.info(
        f"No native strategy available for {mode} cloning",
        extra={"mode": mode},
    )
    return None


def select_cloners(
    sync_registry: Iterable[StrategyDescriptor] = SYNC_REGISTRY,
    async_registry: Iterable[StrategyDescriptor] = ASYNC_REGISTRY,
    disabled: Iterable[str] | None = None,
) -> Selection:
    """Choose one cloner per call mode.

    Each registry is walked in order and only the first passing candidate is
    constructed. The async slot is filled first, then the sync slot,
    independently of each other.

    :param sync_registry: Synchronous candidates in priority order.
    :param async_registry: Asynchronous candidates in priority order.
    :param disabled: Strategy names to skip; defaults to ``disabled_strategy_names`` from settings.
    :returns: Frozen selection.
    :raises ValueError: If the sync registry holds a descriptor that cannot run synchronously.
    """
    sync_candidates: tuple[StrategyDescriptor, ...] = tuple(sync_registry)
    _check_sync_registry(sync_candidates)

    if disabled is None:
        disabled = get_settings().disabled_strategy_names
    disabled_names: frozenset[str] = frozenset(disabled)

    async_cloner: Cloner | None = _select_first(async_registry, "async", disabled_names)
    sync_cloner: Cloner | None = _select_first(sync_candidates, "sync", disabled_names)
    return Selection(sync_cloner=sync_cloner, async_cloner=async_cloner)
