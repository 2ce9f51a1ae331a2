from dentashop.schemas.promotion import (
    CartItem,
    ApplyPromoCodeRequest,
    EvaluationResponse,
    RecordUsageRequest,
    UserPromotionResponse,
    CreatePromotionRequest,
    UpdatePromotionStatusRequest,
    GeneratePromoCodeRequest,
    PromoCodeResponse,
    PromotionResponse,
    PromotionList,
    PromotionStatsResponse,
)
