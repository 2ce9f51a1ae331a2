"""
Promotion System Models

Promotion campaigns, their redeemable promo codes, and the append-only
redemption ledger used for per-user usage accounting.

Products, categories, users and orders live in other services; they are
referenced here by id only.
"""

import enum
from datetime import datetime, timezone

from sqlalchemy import (
    Column, String, Boolean, Integer, JSON,
    DateTime, ForeignKey, Text, Numeric, CheckConstraint, Index
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship

from dentashop.core.database import Base

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite for local runs)
JSONType = JSON().with_variant(JSONB(), "postgresql")


def utcnow():
    """Return timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


class PromotionType(str, enum.Enum):
    PERCENTAGE = "percentage"
    FIXED_AMOUNT = "fixed_amount"
    FREE_SHIPPING = "free_shipping"
    BUY_X_GET_Y = "buy_x_get_y"


class PromotionStatus(str, enum.Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    PAUSED = "paused"
    EXPIRED = "expired"


class Promotion(Base):
    """Discount campaign definition."""
    __tablename__ = "promotions"
    __table_args__ = (
        CheckConstraint("start_date < end_date", name="ck_promotions_window"),
        Index("ix_promotions_window", "start_date", "end_date"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)

    name = Column(String(200), nullable=False)
    description = Column(Text)

    # 'percentage', 'fixed_amount', 'free_shipping', 'buy_x_get_y'
    type = Column(String(20), nullable=False)
    status = Column(String(20), nullable=False, default=PromotionStatus.DRAFT.value, index=True)

    # Percentage or fixed amount depending on type
    discount_value = Column(Numeric(10, 2))
    minimum_order_amount = Column(Numeric(10, 2))
    maximum_discount_amount = Column(Numeric(10, 2))  # Cap for percentage discounts

    # buy_x_get_y only
    buy_quantity = Column(Integer)
    get_quantity = Column(Integer)

    start_date = Column(DateTime(timezone=True), nullable=False)
    end_date = Column(DateTime(timezone=True), nullable=False)

    # Usage limits
    usage_limit = Column(Integer, nullable=False, default=0)  # 0 = unlimited
    usage_count = Column(Integer, nullable=False, default=0)
    usage_limit_per_user = Column(Integer, nullable=False, default=1)

    is_stackable = Column(Boolean, nullable=False, default=False)
    apply_to_sale = Column(Boolean, nullable=False, default=False)

    # Applicability (empty = all products / categories)
    product_ids = Column(JSONType, default=list)
    category_ids = Column(JSONType, default=list)

    conditions = Column(JSONType)
    # "metadata" is reserved on declarative classes
    extra_metadata = Column("metadata", JSONType)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    promo_codes = relationship(
        "PromoCode", back_populates="promotion", cascade="all, delete-orphan", passive_deletes=True
    )

    def __repr__(self) -> str:
        return f"<Promotion id={self.id} name={self.name!r} type={self.type} status={self.status}>"


class PromoCode(Base):
    """Redeemable code bound to exactly one promotion."""
    __tablename__ = "promo_codes"

    id = Column(Integer, primary_key=True, autoincrement=True)

    code = Column(String(50), unique=True, nullable=False, index=True)  # stored uppercase
    promotion_id = Column(
        Integer, ForeignKey("promotions.id", ondelete="CASCADE"), nullable=False, index=True
    )

    is_active = Column(Boolean, nullable=False, default=True, index=True)
    expires_at = Column(DateTime(timezone=True))

    # Independent of the parent promotion's limits; both must pass
    usage_limit = Column(Integer, nullable=False, default=0)  # 0 = unlimited
    usage_count = Column(Integer, nullable=False, default=0)
    usage_limit_per_user = Column(Integer, nullable=False, default=1)

    extra_metadata = Column("metadata", JSONType)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    promotion = relationship("Promotion", back_populates="promo_codes")

    def __repr__(self) -> str:
        return f"<PromoCode id={self.id} code={self.code!r} promotion_id={self.promotion_id}>"


class UserPromotion(Base):
    """Redemption ledger. Rows are never updated after insert."""
    __tablename__ = "user_promotions"
    __table_args__ = (
        Index("ix_user_promotions_user_promotion", "user_id", "promotion_id"),
        Index("ix_user_promotions_user_code", "user_id", "promo_code_id"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)

    user_id = Column(Integer, nullable=False)
    promotion_id = Column(
        Integer, ForeignKey("promotions.id", ondelete="CASCADE"), nullable=False, index=True
    )
    promo_code_id = Column(Integer, ForeignKey("promo_codes.id", ondelete="CASCADE"), index=True)
    order_id = Column(Integer, nullable=False, index=True)

    discount_amount = Column(Numeric(10, 2), nullable=False)

    # Promotion conditions as they were when the code was used
    applied_conditions = Column(JSONType)
    extra_metadata = Column("metadata", JSONType)

    used_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
