"""
Promotion Service

Promo code evaluation, redemption recording, and promotion administration.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from dentashop.core.config import settings
from dentashop.core.exceptions import (
    PromoCodeConflictError,
    PromoCodeNotFoundError,
    PromotionNotFoundError,
    PromotionValidationError,
    UsageLimitExceededError,
)
from dentashop.models.promotion import (
    Promotion,
    PromoCode,
    PromotionStatus,
    PromotionType,
    UserPromotion,
)
from dentashop.services.discount import (
    CartItemInput,
    CartLine,
    ZERO,
    calculate_discount,
    format_amount,
    round_currency,
    to_cart_lines,
    to_decimal,
)
from dentashop.services.promotion_repository import (
    PromotionRepository,
    PromotionStats,
    normalize_code,
)

logger = logging.getLogger(__name__)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Naive datetimes (SQLite, some clients) are taken to be UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _limit_reached(usage_limit: Optional[int], usage_count: Optional[int]) -> bool:
    """usage_limit of 0 (or unset) means unlimited."""
    return bool(usage_limit) and (usage_count or 0) >= usage_limit


@dataclass
class EvaluationResult:
    """
    Outcome of a promo code evaluation.

    Rejections are ordinary results (is_valid=False, discount=0), never
    exceptions. free_shipping tells the order flow to waive shipping; the
    monetary discount of a free_shipping promotion is always 0.
    """
    is_valid: bool
    discount: Decimal
    message: str
    reason: Optional[str] = None
    promotion: Optional[Promotion] = None
    promo_code: Optional[PromoCode] = None
    free_shipping: bool = False

    @classmethod
    def rejected(cls, reason: str, message: str) -> "EvaluationResult":
        return cls(is_valid=False, discount=ZERO, message=message, reason=reason)


class PromotionService:
    """
    Promotion evaluation and management over a PromotionRepository.

    Features:
    - Promo code validation in a fixed, fail-fast order
    - Discount calculation for all four promotion types
    - Guarded usage recording (no over-redemption under concurrency)
    - Promotion/promo code administration and usage stats
    """

    def __init__(self, repository: PromotionRepository):
        self.repository = repository

    # =========================================================================
    # EVALUATION
    # =========================================================================

    async def apply_promo_code(
        self,
        user_id: int,
        code: str,
        cart_total: Union[Decimal, float, int],
        cart_items: Iterable[CartItemInput],
        now: Optional[datetime] = None,
    ) -> EvaluationResult:
        """
        Check whether a promo code is redeemable for this user and cart.

        Args:
            user_id: Redeeming user (per-user limits)
            code: Code as typed by the customer, any case
            cart_total: Cart amount before discount
            cart_items: CartLine objects or dicts of
                {product_id, quantity, price, category_ids?}
            now: Evaluation instant, defaults to the current UTC time

        Returns:
            EvaluationResult. Does not modify any counter; calling it twice
            with the same state gives the same result.
        """
        cart_total = to_decimal(cart_total)
        cart_lines = to_cart_lines(cart_items)
        now = _as_utc(now) or datetime.now(timezone.utc)

        promo_code = await self.repository.find_active_promo_code_by_code(code)
        if not promo_code:
            logger.info(f"Promo code rejected for user {user_id}: {normalize_code(code)!r} not found")
            return EvaluationResult.rejected("INVALID", "Code promo invalide")

        promotion = await self.repository.get_promotion(promo_code.promotion_id)
        if not promotion:
            # FK guarantees the parent; a miss here is data corruption, not ineligibility
            raise PromotionNotFoundError(promotion_id=promo_code.promotion_id)

        rejection = await self._validate_promotion(
            user_id, promotion, promo_code, cart_total, cart_lines, now
        )
        if rejection:
            logger.info(
                f"Promo code {promo_code.code} rejected for user {user_id}: {rejection.reason}"
            )
            return rejection

        discount = calculate_discount(promotion, cart_total, cart_lines)
        symbol = settings.CURRENCY_SYMBOL

        return EvaluationResult(
            is_valid=True,
            discount=discount,
            message=f"Code promo appliqué ! Réduction de {format_amount(discount)}{symbol}",
            promotion=promotion,
            promo_code=promo_code,
            free_shipping=promotion.type == PromotionType.FREE_SHIPPING.value,
        )

    async def _validate_promotion(
        self,
        user_id: int,
        promotion: Promotion,
        promo_code: PromoCode,
        cart_total: Decimal,
        cart_lines: Sequence[CartLine],
        now: datetime,
    ) -> Optional[EvaluationResult]:
        """Return the first violated rule as a rejection, or None if all pass."""
        start_date = _as_utc(promotion.start_date)
        end_date = _as_utc(promotion.end_date)
        if now < start_date or now > end_date:
            return EvaluationResult.rejected("OUT_OF_WINDOW", "Cette promotion n'est plus valide")

        if promotion.status != PromotionStatus.ACTIVE.value:
            return EvaluationResult.rejected("NOT_ACTIVE", "Cette promotion n'est pas active")

        expires_at = _as_utc(promo_code.expires_at)
        if expires_at and now > expires_at:
            return EvaluationResult.rejected("CODE_EXPIRED", "Ce code promo a expiré")

        if _limit_reached(promo_code.usage_limit, promo_code.usage_count):
            return EvaluationResult.rejected(
                "CODE_EXHAUSTED", "Ce code promo a atteint sa limite d'utilisation"
            )

        if _limit_reached(promotion.usage_limit, promotion.usage_count):
            return EvaluationResult.rejected(
                "PROMOTION_EXHAUSTED", "Cette promotion a atteint sa limite d'utilisation"
            )

        user_usage = await self.repository.count_user_promotion_usage(user_id, promotion.id)
        if user_usage >= promotion.usage_limit_per_user:
            return EvaluationResult.rejected(
                "USER_PROMOTION_LIMIT",
                "Vous avez déjà utilisé cette promotion le nombre maximum de fois",
            )

        user_code_usage = await self.repository.count_user_promo_code_usage(user_id, promo_code.id)
        if user_code_usage >= promo_code.usage_limit_per_user:
            return EvaluationResult.rejected(
                "USER_CODE_LIMIT",
                "Vous avez déjà utilisé ce code promo le nombre maximum de fois",
            )

        if promotion.minimum_order_amount and cart_total < to_decimal(promotion.minimum_order_amount):
            minimum = format_amount(promotion.minimum_order_amount)
            return EvaluationResult.rejected(
                "MIN_ORDER",
                f"Montant minimum de commande requis: {minimum}{settings.CURRENCY_SYMBOL}",
            )

        product_ids = set(promotion.product_ids or [])
        if product_ids and not any(line.product_id in product_ids for line in cart_lines):
            return EvaluationResult.rejected(
                "NO_APPLICABLE_PRODUCTS",
                "Cette promotion ne s'applique à aucun produit de votre panier",
            )

        category_ids = set(promotion.category_ids or [])
        if category_ids and not any(
            category_ids.intersection(line.category_ids) for line in cart_lines
        ):
            return EvaluationResult.rejected(
                "NO_APPLICABLE_CATEGORIES",
                "Cette promotion ne s'applique à aucune catégorie de votre panier",
            )

        return None

    # =========================================================================
    # REDEMPTION
    # =========================================================================

    async def record_promotion_usage(
        self,
        user_id: int,
        promotion_id: int,
        promo_code_id: int,
        order_id: int,
        discount_amount: Union[Decimal, float, int],
        metadata: Optional[Dict[str, Any]] = None,
    ) -> UserPromotion:
        """
        Record a redemption for a completed order.

        Call exactly once per order, inside the order's transaction. The
        promotion row and then the promo code row are locked while limits
        are re-checked, and both counters are incremented with a guard, so
        two concurrent checkouts cannot both take the last use, nor can one
        user redeem the same promotion twice through two different codes.

        Raises:
            PromoCodeNotFoundError / PromotionNotFoundError: unknown ids
            PromotionValidationError: code does not belong to the promotion
            UsageLimitExceededError: a limit was reached since evaluation;
                the caller must roll back the order
        """
        async with self.repository.lock_promotion(promotion_id) as promotion:
            if promotion is None:
                raise PromotionNotFoundError(promotion_id=promotion_id)

            async with self.repository.lock_promo_code(promo_code_id) as promo_code:
                if promo_code is None:
                    raise PromoCodeNotFoundError(promo_code_id=promo_code_id)
                if promo_code.promotion_id != promotion_id:
                    raise PromotionValidationError(
                        "Le code promo n'appartient pas à cette promotion",
                        details={"promotion_id": promotion_id, "promo_code_id": promo_code_id},
                    )

                await self._ensure_redeemable(user_id, promotion, promo_code)

                if not await self.repository.increment_promotion_usage(promotion_id):
                    logger.warning(f"Promotion {promotion_id} usage guard refused order {order_id}")
                    raise UsageLimitExceededError(
                        "Cette promotion a atteint sa limite d'utilisation",
                        promotion_id=promotion_id, promo_code_id=promo_code_id, user_id=user_id,
                    )
                if not await self.repository.increment_promo_code_usage(promo_code_id):
                    logger.warning(f"Promo code {promo_code_id} usage guard refused order {order_id}")
                    raise UsageLimitExceededError(
                        "Ce code promo a atteint sa limite d'utilisation",
                        promotion_id=promotion_id, promo_code_id=promo_code_id, user_id=user_id,
                    )

                user_promotion = UserPromotion(
                    user_id=user_id,
                    promotion_id=promotion_id,
                    promo_code_id=promo_code_id,
                    order_id=order_id,
                    discount_amount=round_currency(to_decimal(discount_amount)),
                    applied_conditions=promotion.conditions,
                    extra_metadata=metadata,
                )
                await self.repository.add_user_promotion(user_promotion)

        logger.info(
            f"Promo code {promo_code.code} redeemed by user {user_id} on order {order_id}: "
            f"{user_promotion.discount_amount} discount"
        )
        return user_promotion

    async def _ensure_redeemable(
        self, user_id: int, promotion: Promotion, promo_code: PromoCode
    ) -> None:
        """Limit re-check under the redemption lock; raises instead of returning."""
        if _limit_reached(promo_code.usage_limit, promo_code.usage_count):
            raise UsageLimitExceededError(
                "Ce code promo a atteint sa limite d'utilisation",
                promotion_id=promotion.id, promo_code_id=promo_code.id, user_id=user_id,
            )
        if _limit_reached(promotion.usage_limit, promotion.usage_count):
            raise UsageLimitExceededError(
                "Cette promotion a atteint sa limite d'utilisation",
                promotion_id=promotion.id, promo_code_id=promo_code.id, user_id=user_id,
            )
        if await self.repository.count_user_promotion_usage(user_id, promotion.id) >= promotion.usage_limit_per_user:
            raise UsageLimitExceededError(
                "Vous avez déjà utilisé cette promotion le nombre maximum de fois",
                promotion_id=promotion.id, promo_code_id=promo_code.id, user_id=user_id,
            )
        if await self.repository.count_user_promo_code_usage(user_id, promo_code.id) >= promo_code.usage_limit_per_user:
            raise UsageLimitExceededError(
                "Vous avez déjà utilisé ce code promo le nombre maximum de fois",
                promotion_id=promotion.id, promo_code_id=promo_code.id, user_id=user_id,
            )

    # =========================================================================
    # ADMINISTRATION
    # =========================================================================

    async def create_promotion(self, data: Dict[str, Any]) -> Promotion:
        """
        Create a promotion.

        Missing optional fields take the defaults: draft status, unlimited
        global usage, one use per user, not stackable, not applied to sale items.
        """
        start_date = _as_utc(data["start_date"])
        end_date = _as_utc(data["end_date"])
        if start_date >= end_date:
            raise PromotionValidationError(
                "La date de fin doit être postérieure à la date de début",
                details={"start_date": start_date.isoformat(), "end_date": end_date.isoformat()},
            )

        promotion_type = PromotionType(data["type"])
        status = PromotionStatus(data.get("status") or PromotionStatus.DRAFT)

        if promotion_type == PromotionType.BUY_X_GET_Y and not (
            data.get("buy_quantity") and data.get("get_quantity")
        ):
            raise PromotionValidationError(
                "buy_quantity et get_quantity sont requis pour une promotion buy_x_get_y"
            )

        if promotion_type in (PromotionType.PERCENTAGE, PromotionType.FIXED_AMOUNT) and not (
            data.get("discount_value") and to_decimal(data["discount_value"]) > ZERO
        ):
            raise PromotionValidationError(
                f"discount_value est requis pour une promotion {promotion_type.value}",
                details={"type": promotion_type.value},
            )

        promotion = Promotion(
            name=data["name"],
            description=data.get("description"),
            type=promotion_type.value,
            status=status.value,
            discount_value=_optional_decimal(data.get("discount_value")),
            minimum_order_amount=_optional_decimal(data.get("minimum_order_amount")),
            maximum_discount_amount=_optional_decimal(data.get("maximum_discount_amount")),
            buy_quantity=data.get("buy_quantity"),
            get_quantity=data.get("get_quantity"),
            start_date=start_date,
            end_date=end_date,
            usage_limit=data.get("usage_limit") or 0,
            usage_count=0,
            usage_limit_per_user=data.get("usage_limit_per_user") or 1,
            is_stackable=bool(data.get("is_stackable") or False),
            apply_to_sale=bool(data.get("apply_to_sale") or False),
            product_ids=_unique_ids(data.get("product_ids")),
            category_ids=_unique_ids(data.get("category_ids")),
            conditions=data.get("conditions"),
            extra_metadata=data.get("metadata"),
        )

        await self.repository.add_promotion(promotion)
        logger.info(f"Created promotion {promotion.id} ({promotion.type}, {promotion.status}): {promotion.name}")
        return promotion

    async def generate_promo_code(
        self,
        promotion_id: int,
        code: str,
        expires_at: Optional[datetime] = None,
        usage_limit: Optional[int] = None,
        usage_limit_per_user: Optional[int] = None,
    ) -> PromoCode:
        """Attach a new redeemable code to an existing promotion."""
        promotion = await self.repository.get_promotion(promotion_id)
        if not promotion:
            raise PromotionNotFoundError(promotion_id=promotion_id)

        normalized = normalize_code(code)
        if not normalized:
            raise PromotionValidationError("Le code promo ne peut pas être vide")

        if await self.repository.find_promo_code_by_code(normalized):
            raise PromoCodeConflictError(code_value=normalized)

        promo_code = PromoCode(
            code=normalized,
            promotion_id=promotion_id,
            is_active=True,
            expires_at=_as_utc(expires_at),
            usage_limit=usage_limit or 0,
            usage_count=0,
            usage_limit_per_user=usage_limit_per_user or 1,
        )

        await self.repository.add_promo_code(promo_code)
        logger.info(f"Generated promo code {normalized} for promotion {promotion_id}")
        return promo_code

    async def deactivate_promo_code(self, promo_code_id: int) -> PromoCode:
        promo_code = await self.repository.get_promo_code(promo_code_id)
        if not promo_code:
            raise PromoCodeNotFoundError(promo_code_id=promo_code_id)

        promo_code.is_active = False
        await self.repository.save(promo_code)
        logger.info(f"Deactivated promo code {promo_code.code}")
        return promo_code

    async def get_active_promotions(self, now: Optional[datetime] = None) -> List[Promotion]:
        """Active promotions whose window contains now."""
        now = _as_utc(now) or datetime.now(timezone.utc)
        return await self.repository.list_active_promotions(now)

    async def get_all_promotions(
        self,
        page: int = 1,
        limit: int = 20,
        status: Optional[Union[PromotionStatus, str]] = None,
    ) -> Tuple[List[Promotion], int]:
        page = max(page, 1)
        limit = min(max(limit, 1), settings.PROMOTIONS_PAGE_SIZE_MAX)
        status_value = PromotionStatus(status).value if status else None
        return await self.repository.list_promotions((page - 1) * limit, limit, status_value)

    async def get_promotion_stats(self, promotion_id: int) -> PromotionStats:
        if not await self.repository.get_promotion(promotion_id):
            raise PromotionNotFoundError(promotion_id=promotion_id)

        stats = await self.repository.promotion_stats(promotion_id)
        stats.total_discount = round_currency(stats.total_discount)
        stats.average_discount = round_currency(stats.average_discount)
        return stats

    async def update_promotion_status(
        self, promotion_id: int, status: Union[PromotionStatus, str]
    ) -> Promotion:
        promotion = await self.repository.get_promotion(promotion_id)
        if not promotion:
            raise PromotionNotFoundError(promotion_id=promotion_id)

        previous = promotion.status
        promotion.status = PromotionStatus(status).value
        await self.repository.save(promotion)
        logger.info(f"Promotion {promotion_id} status {previous} -> {promotion.status}")
        return promotion

    async def delete_promotion(self, promotion_id: int) -> None:
        if not await self.repository.delete_promotion(promotion_id):
            raise PromotionNotFoundError(promotion_id=promotion_id)
        logger.info(f"Deleted promotion {promotion_id}")


def _optional_decimal(value: Any) -> Optional[Decimal]:
    return None if value is None else to_decimal(value)


def _unique_ids(values: Optional[Iterable[int]]) -> List[int]:
    seen: Dict[int, None] = {}
    for value in values or []:
        seen.setdefault(int(value), None)
    return list(seen)
