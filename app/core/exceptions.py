"""
Core domain exceptions for entitlement activation and settlement.

Used to distinguish business failures from system failures. Service packages
subclass these so callers can catch either the precise error or the category.
"""


class EngineError(Exception):
    """Base class for all engine errors."""
    pass


class ValidationError(EngineError):
    """Malformed input or a rule violation (expired promo, wrong promo type, no trial configured)."""
    pass


class NotFound(EngineError):
    """Referenced client, payment, tariff or promo does not exist (or is inactive)."""
    pass


class Conflict(EngineError):
    """Operation would violate a uniqueness or cap invariant (promo exhausted, trial used, terminal payment)."""
    pass


class InsufficientFunds(EngineError):
    """Balance lower than the amount to debit. Raised before any remote call."""
    pass


class RemoteServiceUnavailable(EngineError):
    """VPN panel unreachable or erroring. No local state is changed by the failing step."""
    pass


class RemoteConflict(EngineError):
    """Panel refused to create a subscriber because the username is taken.

    Internal only: the identity resolver turns it into a lookup by username.
    """
    pass
