from dentashop.models.promotion import (
    Promotion,
    PromoCode,
    UserPromotion,
    PromotionType,
    PromotionStatus,
)

__all__ = [
    "Promotion",
    "PromoCode",
    "UserPromotion",
    "PromotionType",
    "PromotionStatus",
]
