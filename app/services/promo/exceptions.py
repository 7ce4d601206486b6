"""
Promo Service Domain Exceptions
"""

from app.core.exceptions import Conflict, EngineError, NotFound, ValidationError


class PromoServiceError(EngineError):
    """Base exception for promo service errors"""
    pass


class PromoNotFoundError(PromoServiceError, NotFound):
    """Code does not exist or is inactive"""
    pass


class PromoExpiredError(PromoServiceError, ValidationError):
    """Promo code past its expires_at"""
    pass


class PromoTypeError(PromoServiceError, ValidationError):
    """Promo code cannot be used this way (DISCOUNT activated directly, FREE_DAYS at checkout)"""
    pass


class PromoExhaustedError(PromoServiceError, Conflict):
    """Global cap reached"""
    pass


class PromoAlreadyUsedError(PromoServiceError, Conflict):
    """Per-client cap reached"""
    pass
