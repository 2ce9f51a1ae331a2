"""
Promotion API Routes

Customer promo code evaluation, order-side usage recording, and admin CRUD.

Structural faults (unknown ids, duplicate codes, lost usage races) are raised
as DentaShopError subclasses and answered by the app-level exception handler.
"""

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status

from dentashop.api.deps import CurrentUser, get_current_admin, get_current_user, get_promotion_service
from dentashop.models.promotion import PromotionStatus
from dentashop.schemas.promotion import (
    ApplyPromoCodeRequest,
    CreatePromotionRequest,
    EvaluationResponse,
    GeneratePromoCodeRequest,
    PromoCodeResponse,
    PromotionList,
    PromotionResponse,
    PromotionStatsResponse,
    RecordUsageRequest,
    UpdatePromotionStatusRequest,
    UserPromotionResponse,
)
from dentashop.services.promotion_service import PromotionService

logger = logging.getLogger(__name__)
router = APIRouter()


# ============================================================================
# CUSTOMER ENDPOINTS
# ============================================================================

@router.post("/apply", response_model=EvaluationResponse)
async def apply_promo_code(
    payload: ApplyPromoCodeRequest,
    user: CurrentUser = Depends(get_current_user),
    service: PromotionService = Depends(get_promotion_service),
):
    """
    Evaluate a promo code against the current cart.

    Ineligible codes answer 200 with is_valid=false and a customer-facing
    message. Nothing is recorded here; the order flow calls /usage once
    the order is placed.
    """
    result = await service.apply_promo_code(
        user_id=user.id,
        code=payload.code,
        cart_total=payload.cart_total,
        cart_items=[item.model_dump() for item in payload.cart_items],
    )

    return EvaluationResponse(
        is_valid=result.is_valid,
        discount=float(result.discount),
        message=result.message,
        free_shipping=result.free_shipping,
        promotion_id=result.promotion.id if result.promotion else None,
        promo_code_id=result.promo_code.id if result.promo_code else None,
        promotion_type=result.promotion.type if result.promotion else None,
        code=result.promo_code.code if result.promo_code else None,
    )


@router.get("/active", response_model=List[PromotionResponse])
async def list_active_promotions(
    service: PromotionService = Depends(get_promotion_service),
):
    """Promotions currently running (public, for storefront banners)."""
    promotions = await service.get_active_promotions()
    return [PromotionResponse.model_validate(p) for p in promotions]


# ============================================================================
# ORDER FLOW
# ============================================================================

@router.post("/usage", response_model=UserPromotionResponse, status_code=status.HTTP_201_CREATED)
async def record_usage(
    payload: RecordUsageRequest,
    admin: CurrentUser = Depends(get_current_admin),
    service: PromotionService = Depends(get_promotion_service),
):
    """
    Record a redemption for a placed order (service/admin token only).

    409 when the last use was taken since evaluation; the order must then be
    re-priced without the promotion.
    """
    user_promotion = await service.record_promotion_usage(
        user_id=payload.user_id,
        promotion_id=payload.promotion_id,
        promo_code_id=payload.promo_code_id,
        order_id=payload.order_id,
        discount_amount=payload.discount_amount,
    )
    return UserPromotionResponse.model_validate(user_promotion)


# ============================================================================
# ADMIN ENDPOINTS
# ============================================================================

@router.get("", response_model=PromotionList)
async def list_promotions(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    promotion_status: Optional[PromotionStatus] = Query(None, alias="status"),
    admin: CurrentUser = Depends(get_current_admin),
    service: PromotionService = Depends(get_promotion_service),
):
    """List all promotions, newest first (admin only)."""
    promotions, total = await service.get_all_promotions(
        page=page, limit=limit, status=promotion_status
    )
    return PromotionList(
        promotions=[PromotionResponse.model_validate(p) for p in promotions],
        total=total,
        page=page,
        limit=limit,
    )


@router.post("", response_model=PromotionResponse, status_code=status.HTTP_201_CREATED)
async def create_promotion(
    payload: CreatePromotionRequest,
    admin: CurrentUser = Depends(get_current_admin),
    service: PromotionService = Depends(get_promotion_service),
):
    """Create a new promotion (admin only)."""
    promotion = await service.create_promotion(payload.model_dump())
    logger.info(f"Admin {admin.id} created promotion {promotion.id}")
    return PromotionResponse.model_validate(promotion)


@router.get("/{promotion_id}/stats", response_model=PromotionStatsResponse)
async def promotion_stats(
    promotion_id: int,
    admin: CurrentUser = Depends(get_current_admin),
    service: PromotionService = Depends(get_promotion_service),
):
    """Usage statistics for a promotion (admin only)."""
    stats = await service.get_promotion_stats(promotion_id)
    return PromotionStatsResponse(
        promotion_id=promotion_id,
        total_usage=stats.total_usage,
        total_discount=float(stats.total_discount),
        unique_users=stats.unique_users,
        average_discount=float(stats.average_discount),
    )


@router.patch("/{promotion_id}/status", response_model=PromotionResponse)
async def update_promotion_status(
    promotion_id: int,
    payload: UpdatePromotionStatusRequest,
    admin: CurrentUser = Depends(get_current_admin),
    service: PromotionService = Depends(get_promotion_service),
):
    """Activate, pause or expire a promotion (admin only)."""
    promotion = await service.update_promotion_status(promotion_id, payload.status)
    return PromotionResponse.model_validate(promotion)


@router.delete("/{promotion_id}")
async def delete_promotion(
    promotion_id: int,
    admin: CurrentUser = Depends(get_current_admin),
    service: PromotionService = Depends(get_promotion_service),
):
    """Delete a promotion with its promo codes and usage history (admin only)."""
    await service.delete_promotion(promotion_id)
    logger.info(f"Admin {admin.id} deleted promotion {promotion_id}")
    return {"deleted": True, "id": promotion_id}


@router.post(
    "/{promotion_id}/codes",
    response_model=PromoCodeResponse,
    status_code=status.HTTP_201_CREATED,
)
async def generate_promo_code(
    promotion_id: int,
    payload: GeneratePromoCodeRequest,
    admin: CurrentUser = Depends(get_current_admin),
    service: PromotionService = Depends(get_promotion_service),
):
    """Attach a new promo code to a promotion (admin only)."""
    promo_code = await service.generate_promo_code(
        promotion_id=promotion_id,
        code=payload.code,
        expires_at=payload.expires_at,
        usage_limit=payload.usage_limit,
        usage_limit_per_user=payload.usage_limit_per_user,
    )
    return PromoCodeResponse.model_validate(promo_code)


@router.patch("/codes/{promo_code_id}/deactivate", response_model=PromoCodeResponse)
async def deactivate_promo_code(
    promo_code_id: int,
    admin: CurrentUser = Depends(get_current_admin),
    service: PromotionService = Depends(get_promotion_service),
):
    """Disable a promo code without touching its promotion (admin only)."""
    promo_code = await service.deactivate_promo_code(promo_code_id)
    return PromoCodeResponse.model_validate(promo_code)
