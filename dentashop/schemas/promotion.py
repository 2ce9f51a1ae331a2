"""
Promotion schemas
"""
from datetime import datetime
from typing import Any, Dict, List, Optional
from pydantic import AliasChoices, BaseModel, Field

from dentashop.models.promotion import PromotionStatus, PromotionType


# ============================================================================
# EVALUATION
# ============================================================================

class CartItem(BaseModel):
    product_id: int
    quantity: int = Field(ge=1)
    price: float = Field(ge=0)  # unit price
    category_ids: List[int] = Field(default_factory=list)


class ApplyPromoCodeRequest(BaseModel):
    code: str = Field(min_length=1, max_length=50)
    cart_total: float = Field(ge=0)
    cart_items: List[CartItem]
    # Shipping method, region... accepted for the storefront, not evaluated
    cart_metadata: Optional[Dict[str, Any]] = None


class EvaluationResponse(BaseModel):
    is_valid: bool
    discount: float
    message: str
    free_shipping: bool = False
    promotion_id: Optional[int] = None
    promo_code_id: Optional[int] = None
    promotion_type: Optional[str] = None
    code: Optional[str] = None


class RecordUsageRequest(BaseModel):
    user_id: int
    promotion_id: int
    promo_code_id: int
    order_id: int
    discount_amount: float = Field(ge=0)


class UserPromotionResponse(BaseModel):
    id: int
    user_id: int
    promotion_id: int
    promo_code_id: Optional[int] = None
    order_id: int
    discount_amount: float
    applied_conditions: Optional[Dict[str, Any]] = None
    used_at: datetime

    class Config:
        from_attributes = True


# ============================================================================
# ADMINISTRATION
# ============================================================================

class CreatePromotionRequest(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    description: Optional[str] = None
    type: PromotionType
    status: Optional[PromotionStatus] = None
    discount_value: Optional[float] = Field(default=None, ge=0)
    minimum_order_amount: Optional[float] = Field(default=None, ge=0)
    maximum_discount_amount: Optional[float] = Field(default=None, ge=0)
    buy_quantity: Optional[int] = Field(default=None, ge=1)
    get_quantity: Optional[int] = Field(default=None, ge=1)
    start_date: datetime
    end_date: datetime
    usage_limit: Optional[int] = Field(default=None, ge=0)
    usage_limit_per_user: Optional[int] = Field(default=None, ge=1)
    is_stackable: Optional[bool] = None
    apply_to_sale: Optional[bool] = None
    product_ids: List[int] = Field(default_factory=list)
    category_ids: List[int] = Field(default_factory=list)
    conditions: Optional[Dict[str, Any]] = None
    metadata: Optional[Dict[str, Any]] = None


class UpdatePromotionStatusRequest(BaseModel):
    status: PromotionStatus


class GeneratePromoCodeRequest(BaseModel):
    code: str = Field(min_length=1, max_length=50)
    expires_at: Optional[datetime] = None
    usage_limit: Optional[int] = Field(default=None, ge=0)
    usage_limit_per_user: Optional[int] = Field(default=None, ge=1)


class PromoCodeResponse(BaseModel):
    id: int
    code: str
    promotion_id: int
    is_active: bool
    expires_at: Optional[datetime] = None
    usage_limit: int
    usage_count: int
    usage_limit_per_user: int

    class Config:
        from_attributes = True


class PromotionResponse(BaseModel):
    id: int
    name: str
    description: Optional[str] = None
    type: str
    status: str
    discount_value: Optional[float] = None
    minimum_order_amount: Optional[float] = None
    maximum_discount_amount: Optional[float] = None
    buy_quantity: Optional[int] = None
    get_quantity: Optional[int] = None
    start_date: datetime
    end_date: datetime
    usage_limit: int
    usage_count: int
    usage_limit_per_user: int
    is_stackable: bool
    apply_to_sale: bool
    product_ids: List[int] = Field(default_factory=list)
    category_ids: List[int] = Field(default_factory=list)
    conditions: Optional[Dict[str, Any]] = None
    metadata: Optional[Dict[str, Any]] = Field(
        default=None, validation_alias=AliasChoices("extra_metadata", "metadata")
    )
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class PromotionList(BaseModel):
    promotions: List[PromotionResponse]
    total: int
    page: int
    limit: int


class PromotionStatsResponse(BaseModel):
    promotion_id: int
    total_usage: int
    total_discount: float
    unique_users: int
    average_discount: float
