"""
Venue Registry

Explicitly constructed set of venue adapters handed to the core at
startup. Capability flags (which venues are enabled) are read once when
the registry is built and never re-read.

@module venues.registry
"""

import logging
from typing import Dict, Iterable, List, Optional

from ..models import Strategy
from .http_venue import HttpVenue
from .interface import VenueAdapter
from .paper import PaperVenue


logger = logging.getLogger(__name__)


class VenueRegistry:
    """
    Routes strategies to venue adapters.

    Usage:
        registry = VenueRegistry([PaperVenue("paper")])
        venue = registry.for_strategy(Strategy.LIQUID_STAKING)
    """

    def __init__(self, adapters: Iterable[VenueAdapter], disabled: Iterable[str] = ()):
        self._adapters: Dict[str, VenueAdapter] = {}
        for adapter in adapters:
            if adapter.name in self._adapters:
                raise ValueError(f"duplicate venue name {adapter.name}")
            self._adapters[adapter.name] = adapter
        self._disabled = frozenset(disabled)

    def get(self, name: str) -> Optional[VenueAdapter]:
        if name in self._disabled:
            return None
        return self._adapters.get(name)

    def is_enabled(self, name: str) -> bool:
        return name in self._adapters and name not in self._disabled

    def enabled(self) -> List[VenueAdapter]:
        return [a for name, a in self._adapters.items() if name not in self._disabled]

    def for_strategy(self, strategy: Strategy) -> Optional[VenueAdapter]:
        """First enabled venue that serves `strategy`."""
        for adapter in self.enabled():
            if adapter.handles(strategy):
                return adapter
        return None

    def names(self) -> List[str]:
        return [a.name for a in self.enabled()]

    async def close(self) -> None:
        for adapter in self._adapters.values():
            try:
                await adapter.close()
            except Exception as e:
                logger.warning(f"Error closing venue {adapter.name}: {e}")


def parse_endpoints(raw: str) -> Dict[str, tuple]:
    """
    Parse "name:strategy+strategy:url,..." into {name: (strategies, url)}.

    Example: "polymarket:prediction_market:http://poly-gw:8080"
    """
    endpoints: Dict[str, tuple] = {}
    for item in raw.split(","):
        item = item.strip()
        if not item:
            continue
        parts = item.split(":", 2)
        if len(parts) != 3:
            logger.warning(f"Ignoring malformed venue endpoint '{item}'")
            continue
        name, strategies, url = parts
        endpoints[name] = ([Strategy(s) for s in strategies.split("+") if s], url)
    return endpoints


def build_registry(
    enabled: Iterable[str],
    endpoints: str = "",
    timeout: float = 30.0,
) -> VenueRegistry:
    """
    Build the registry from configuration.

    Venues with a gateway endpoint become HttpVenue; "paper" is the
    built-in simulator. Names listed in neither are skipped with a warning.
    """
    enabled = list(enabled)
    configured = parse_endpoints(endpoints)
    adapters: List[VenueAdapter] = []

    for name in enabled:
        if name in configured:
            strategies, url = configured[name]
            adapters.append(HttpVenue(name, url, strategies, timeout=timeout))
        elif name == "paper":
            adapters.append(PaperVenue("paper"))
        else:
            logger.warning(f"Venue '{name}' enabled but has no endpoint configured, skipping")

    logger.info(f"Venue registry: {[a.name for a in adapters]}")
    return VenueRegistry(adapters)
