from dentashop.services.discount import CartLine, calculate_discount, format_amount, round_currency
from dentashop.services.promotion_repository import (
    PromotionRepository,
    SqlAlchemyPromotionRepository,
    InMemoryPromotionRepository,
    PromotionStats,
    normalize_code,
)
from dentashop.services.promotion_service import PromotionService, EvaluationResult
from dentashop.services.redemption import record_order_redemption
