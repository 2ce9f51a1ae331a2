"""
Order-side redemption entry point.

The order service calls record_order_redemption once an order is placed.
Passing its own session keeps the ledger row and the counter increments in
the order's transaction; without one, a dedicated session is opened and
committed here.
"""

import logging
from decimal import Decimal
from typing import Optional, Union

from sqlalchemy.ext.asyncio import AsyncSession

from dentashop.core.database import get_db_session
from dentashop.models.promotion import UserPromotion
from dentashop.services.promotion_repository import SqlAlchemyPromotionRepository
from dentashop.services.promotion_service import PromotionService

logger = logging.getLogger(__name__)


async def record_order_redemption(
    user_id: int,
    promotion_id: int,
    promo_code_id: int,
    order_id: int,
    discount_amount: Union[Decimal, float, int],
    db: Optional[AsyncSession] = None,
) -> UserPromotion:
    """
    Record the promo code used by an order.

    Raises UsageLimitExceededError when the last use went to a concurrent
    order; when the session is owned here it has already been rolled back.
    """
    if db is not None:
        service = PromotionService(SqlAlchemyPromotionRepository(db))
        return await service.record_promotion_usage(
            user_id, promotion_id, promo_code_id, order_id, discount_amount
        )

    async with get_db_session() as session:
        service = PromotionService(SqlAlchemyPromotionRepository(session))
        user_promotion = await service.record_promotion_usage(
            user_id, promotion_id, promo_code_id, order_id, discount_amount
        )

    logger.info(f"Order {order_id} redemption committed")
    return user_promotion
