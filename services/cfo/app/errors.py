"""Exception types shared across the CFO service."""


class CFOError(Exception):
    """Base class for CFO errors."""


class LedgerError(CFOError):
    """A ledger read or write failed. Never swallowed."""


class VenueError(CFOError):
    """A venue call failed."""

    def __init__(self, venue: str, message: str):
        super().__init__(f"{venue}: {message}")
        self.venue = venue


class VenueTransientError(VenueError):
    """Rate limit, network blip. Safe to retry with backoff."""


class VenueTerminalError(VenueError):
    """Rejected order, insufficient funds. Recorded, never retried."""


class VenueTimeoutError(VenueError):
    """The call did not finish in time. Outcome is unknown."""


class ProducerError(CFOError):
    """The decision producer could not produce a decision set."""


class ApprovalNotFound(CFOError):
    pass
