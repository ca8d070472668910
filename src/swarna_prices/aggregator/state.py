"""Provider selection state shared by every serving call."""

from __future__ import annotations

import threading
from collections.abc import Callable

from pydantic import BaseModel, ConfigDict

from swarna_prices.core.models import STORE_ONLY, OperatingMode, ProviderName


class AggregatorState(BaseModel):
    """Immutable snapshot of which providers serve reads."""

    model_config = ConfigDict(frozen=True)

    primary: ProviderName | None
    fallback: ProviderName | None = None
    mode: OperatingMode = OperatingMode.LIVE
    generation: int = 0

    @property
    def active_provider(self) -> str:
        """``store-only`` when network calls are off, else the primary's name."""
        if self.mode == OperatingMode.STORE_ONLY or self.primary is None:
            return STORE_ONLY
        return self.primary

    @property
    def network_enabled(self) -> bool:
        return self.mode == OperatingMode.LIVE

    def chain(self) -> list[ProviderName]:
        """Providers to try, in order. Empty in store-only mode."""
        if not self.network_enabled or self.primary is None:
            return []
        names = [self.primary]
        if self.fallback is not None and self.fallback != self.primary:
            names.append(self.fallback)
        return names

    def summary(self) -> dict[str, object]:
        return {
            "mode": str(self.mode),
            "provider": self.active_provider,
            "primary": self.primary,
            "fallback": self.fallback,
            "generation": self.generation,
        }


class AggregatorStateHolder:
    """The only mutable shared object: readers get a snapshot, writers swap it whole."""

    def __init__(self, initial: AggregatorState) -> None:
        self._lock = threading.Lock()
        self._state = initial

    def get(self) -> AggregatorState:
        with self._lock:
            return self._state

    def swap(
        self, update: Callable[[AggregatorState], AggregatorState]
    ) -> tuple[AggregatorState, AggregatorState]:
        """Replace the state with ``update(current)``; returns (previous, current)."""
        with self._lock:
            previous = self._state
            current = update(previous).model_copy(
                update={"generation": previous.generation + 1}
            )
            self._state = current
            return previous, current
