"""
DentaShop Exception Hierarchy

Structured exception classes for the promotions subsystem. Every exception
carries code, message and details so it can be logged and translated to an
HTTP response without string matching.

Ordinary promo code ineligibility (expired, exhausted, cart too small...) is
NOT an exception: the evaluator returns an invalid EvaluationResult instead.
These classes cover structural faults only.

Exception Hierarchy:
    DentaShopError
    └── PromotionError
        ├── PromotionNotFoundError
        ├── PromoCodeNotFoundError
        ├── PromoCodeConflictError
        ├── PromotionValidationError
        └── UsageLimitExceededError
"""
from typing import Optional, Dict, Any


class DentaShopError(Exception):
    """
    Base exception for all DentaShop custom errors.

    Attributes:
        message: Human-readable error description
        code: Machine-readable error code for programmatic handling
        details: Additional context for debugging/audit
        severity: P0-P3 severity level
        status_code: HTTP status the API layer answers with
    """

    default_code: str = "DENTASHOP_ERROR"
    default_severity: str = "P2"
    status_code: int = 500

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        severity: Optional[str] = None,
    ):
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}
        self.severity = severity or self.default_severity
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for logging/serialization."""
        return {
            "error_type": self.__class__.__name__,
            "code": self.code,
            "message": self.message,
            "severity": self.severity,
            "details": self.details,
        }

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(code={self.code!r}, message={self.message!r})"


# =============================================================================
# PROMOTION ERRORS
# =============================================================================

class PromotionError(DentaShopError):
    """Base exception for promotion-related errors."""
    default_code = "PROMOTION_ERROR"


class PromotionNotFoundError(PromotionError):
    """Promotion row absent where an operation requires it."""
    default_code = "PROMOTION_NOT_FOUND"
    default_severity = "P3"
    status_code = 404

    def __init__(self, message: str = "Promotion non trouvée", promotion_id: Optional[int] = None, **kwargs):
        details = kwargs.pop("details", {})
        details["promotion_id"] = promotion_id
        super().__init__(message, details=details, **kwargs)


class PromoCodeNotFoundError(PromotionError):
    """Promo code row absent where an operation requires it."""
    default_code = "PROMO_CODE_NOT_FOUND"
    default_severity = "P3"
    status_code = 404

    def __init__(self, message: str = "Code promo non trouvé", promo_code_id: Optional[int] = None, **kwargs):
        details = kwargs.pop("details", {})
        details["promo_code_id"] = promo_code_id
        super().__init__(message, details=details, **kwargs)


class PromoCodeConflictError(PromotionError):
    """A promo code with the same normalized value already exists."""
    default_code = "PROMO_CODE_EXISTS"
    default_severity = "P3"
    status_code = 409

    def __init__(self, message: str = "Ce code promo existe déjà", code_value: Optional[str] = None, **kwargs):
        details = kwargs.pop("details", {})
        details["code"] = code_value
        super().__init__(message, details=details, **kwargs)


class PromotionValidationError(PromotionError):
    """Promotion or promo code definition is malformed (e.g. end before start)."""
    default_code = "PROMOTION_INVALID"
    default_severity = "P3"
    status_code = 400


class UsageLimitExceededError(PromotionError):
    """
    A redemption lost the race for the last available use.

    Raised by record_promotion_usage when the guarded increment or the
    per-user re-check fails. The caller's transaction must roll back.
    """
    default_code = "PROMOTION_USAGE_LIMIT_REACHED"
    default_severity = "P2"
    status_code = 409

    def __init__(
        self,
        message: str,
        promotion_id: Optional[int] = None,
        promo_code_id: Optional[int] = None,
        user_id: Optional[int] = None,
        **kwargs
    ):
        details = kwargs.pop("details", {})
        details.update({
            "promotion_id": promotion_id,
            "promo_code_id": promo_code_id,
            "user_id": user_id,
        })
        super().__init__(message, details=details, **kwargs)
