"""Backend selection.

Availability is re-probed on every call: a backend that was down a minute
ago may be back, so failures are never cached.
"""

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field

from agentdeck.backends.base import BackendAdapter

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NoServiceAvailable:
    """No backend passed its probe.

    Attributes:
        probes: Backend name -> probe outcome, in probe order
    """

    probes: dict[str, bool] = field(default_factory=dict)


class BackendSelector:
    def __init__(self, adapters: Sequence[BackendAdapter]):
        # Order of ``adapters`` is the fallback priority
        self.adapters = list(adapters)
        self._by_name = {a.name: a for a in self.adapters}

    @property
    def names(self) -> list[str]:
        return [a.name for a in self.adapters]

    async def select(self, preferred: str | None = None) -> BackendAdapter | NoServiceAvailable:
        """Pick the preferred backend if it is up, else the first that is."""
        probes: dict[str, bool] = {}

        if preferred:
            adapter = self._by_name.get(preferred)
            if adapter is None:
                logger.warning(f"Unknown backend {preferred!r}, choosing from {self.names}")
            else:
                probes[adapter.name] = await adapter.check_availability()
                if probes[adapter.name]:
                    return adapter
                logger.info(f"Preferred backend {preferred} unavailable, falling back")

        for adapter in self.adapters:
            if adapter.name in probes:
                continue
            probes[adapter.name] = await adapter.check_availability()
            if probes[adapter.name]:
                logger.debug(f"Selected backend {adapter.name}")
                return adapter

        logger.warning(f"No backend available (probed: {probes})")
        return NoServiceAvailable(probes=probes)

    async def probe_all(self) -> dict[str, bool]:
        """Probe every backend, for status displays."""
        return {a.name: await a.check_availability() for a in self.adapters}
