"""Exception types shared by the stores, the per-client services and the API."""


class MarketplaceError(Exception):
    """Base class for every error this service raises on purpose."""


class ConfigurationError(MarketplaceError):
    """A required external credential or setting is missing."""


class StoreError(MarketplaceError):
    """A read or write against the database failed."""


class ConflictError(StoreError):
    """A write hit a unique constraint."""


class InputError(MarketplaceError):
    """Rejected before any network call: empty name, unknown role, empty body..."""


class SessionError(MarketplaceError):
    """The operation needs an active, verified session."""


class NotFoundError(MarketplaceError):
    """The requested row does not exist."""


class PaymentError(MarketplaceError):
    """The payment gateway call failed or timed out."""


class StatusTransitionError(MarketplaceError):
    def __init__(self, current: str, requested: str):
        super().__init__(f"Cannot move order from {current} to {requested}")
        self.current = current
        self.requested = requested
