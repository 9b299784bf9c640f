"""
Venue Integration Module

Narrow async adapters for every external trading venue, plus the
registry that hands them to the core.

@module venues
"""

from .interface import (
    HealthResult,
    Opportunity,
    OrderAction,
    OrderRequest,
    OrderResult,
    OrderStatus,
    OrderStatusResult,
    RedeemResult,
    VenueAdapter,
    VenuePosition,
)
from .http_venue import HttpVenue
from .paper import PaperVenue
from .registry import VenueRegistry, build_registry

__all__ = [
    "HealthResult",
    "Opportunity",
    "OrderAction",
    "OrderRequest",
    "OrderResult",
    "OrderStatus",
    "OrderStatusResult",
    "RedeemResult",
    "VenueAdapter",
    "VenuePosition",
    "HttpVenue",
    "PaperVenue",
    "VenueRegistry",
    "build_registry",
]
