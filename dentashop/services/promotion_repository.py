"""
Promotion Repository

Typed storage operations the promotion service depends on. The service never
touches a session directly, so the evaluator can run against PostgreSQL in
production and against process memory in tests or embedded tooling.

Implementations:
- SqlAlchemyPromotionRepository: async SQLAlchemy session (production)
- InMemoryPromotionRepository: dict-backed, single process
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import AsyncIterator, Dict, List, Optional, Tuple

from sqlalchemy import select, update, delete, func, or_
from sqlalchemy.ext.asyncio import AsyncSession

from dentashop.models.promotion import Promotion, PromoCode, UserPromotion, PromotionStatus

logger = logging.getLogger(__name__)


def normalize_code(code: str) -> str:
    """Promo codes are matched case-insensitively and stored uppercase."""
    return (code or "").strip().upper()


@dataclass
class PromotionStats:
    total_usage: int
    total_discount: Decimal
    unique_users: int
    average_discount: Decimal


class PromotionRepository(ABC):
    """Storage contract for promotions, promo codes and the redemption ledger."""

    # --- lookups -----------------------------------------------------------

    @abstractmethod
    async def find_active_promo_code_by_code(self, code: str) -> Optional[PromoCode]:
        """Active promo code matching the normalized code, or None."""

    @abstractmethod
    async def find_promo_code_by_code(self, code: str) -> Optional[PromoCode]:
        """Promo code matching the normalized code, active or not."""

    @abstractmethod
    async def get_promo_code(self, promo_code_id: int) -> Optional[PromoCode]:
        ...

    @abstractmethod
    async def get_promotion(self, promotion_id: int) -> Optional[Promotion]:
        ...

    @abstractmethod
    async def count_user_promotion_usage(self, user_id: int, promotion_id: int) -> int:
        ...

    @abstractmethod
    async def count_user_promo_code_usage(self, user_id: int, promo_code_id: int) -> int:
        ...

    @abstractmethod
    async def list_promotions(
        self, offset: int, limit: int, status: Optional[str] = None
    ) -> Tuple[List[Promotion], int]:
        """Page of promotions, newest first, plus the unpaginated total."""

    @abstractmethod
    async def list_active_promotions(self, now: datetime) -> List[Promotion]:
        ...

    @abstractmethod
    async def promotion_stats(self, promotion_id: int) -> PromotionStats:
        ...

    # --- writes ------------------------------------------------------------

    @abstractmethod
    async def add_promotion(self, promotion: Promotion) -> Promotion:
        ...

    @abstractmethod
    async def add_promo_code(self, promo_code: PromoCode) -> PromoCode:
        ...

    @abstractmethod
    async def add_user_promotion(self, user_promotion: UserPromotion) -> UserPromotion:
        ...

    @abstractmethod
    async def save(self, obj) -> None:
        """Persist attribute changes made to a loaded promotion or promo code."""

    @abstractmethod
    async def delete_promotion(self, promotion_id: int) -> bool:
        """Delete a promotion with its codes and ledger rows. False if absent."""

    @abstractmethod
    def lock_promotion(self, promotion_id: int):
        """
        Async context manager serializing redemptions of one promotion.

        Yields the promotion (or None). Taken before lock_promo_code so that
        every redemption acquires locks in the same order, and held while
        per-user limits are re-counted. Codes of the same promotion share it.
        """

    @abstractmethod
    def lock_promo_code(self, promo_code_id: int):
        """
        Async context manager serializing redemptions of one promo code.

        Yields the promo code (or None). Always taken inside lock_promotion.
        """

    @abstractmethod
    async def increment_promotion_usage(self, promotion_id: int) -> bool:
        """Add one use unless the promotion is at its limit. False when refused."""

    @abstractmethod
    async def increment_promo_code_usage(self, promo_code_id: int) -> bool:
        """Add one use unless the promo code is at its limit. False when refused."""


class SqlAlchemyPromotionRepository(PromotionRepository):
    """
    Repository over an AsyncSession.

    Does not commit: the session owner (request dependency or the order
    transaction) decides when the unit of work ends.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def find_active_promo_code_by_code(self, code: str) -> Optional[PromoCode]:
        result = await self.db.execute(
            select(PromoCode).where(
                PromoCode.code == normalize_code(code),
                PromoCode.is_active == True,  # noqa: E712
            )
        )
        return result.scalar_one_or_none()

    async def find_promo_code_by_code(self, code: str) -> Optional[PromoCode]:
        result = await self.db.execute(
            select(PromoCode).where(PromoCode.code == normalize_code(code))
        )
        return result.scalar_one_or_none()

    async def get_promo_code(self, promo_code_id: int) -> Optional[PromoCode]:
        result = await self.db.execute(select(PromoCode).where(PromoCode.id == promo_code_id))
        return result.scalar_one_or_none()

    async def get_promotion(self, promotion_id: int) -> Optional[Promotion]:
        result = await self.db.execute(select(Promotion).where(Promotion.id == promotion_id))
        return result.scalar_one_or_none()

    async def count_user_promotion_usage(self, user_id: int, promotion_id: int) -> int:
        count = await self.db.scalar(
            select(func.count(UserPromotion.id)).where(
                UserPromotion.user_id == user_id,
                UserPromotion.promotion_id == promotion_id,
            )
        )
        return int(count or 0)

    async def count_user_promo_code_usage(self, user_id: int, promo_code_id: int) -> int:
        count = await self.db.scalar(
            select(func.count(UserPromotion.id)).where(
                UserPromotion.user_id == user_id,
                UserPromotion.promo_code_id == promo_code_id,
            )
        )
        return int(count or 0)

    async def list_promotions(
        self, offset: int, limit: int, status: Optional[str] = None
    ) -> Tuple[List[Promotion], int]:
        query = select(Promotion).order_by(Promotion.created_at.desc(), Promotion.id.desc())
        count_query = select(func.count(Promotion.id))

        if status:
            query = query.where(Promotion.status == status)
            count_query = count_query.where(Promotion.status == status)

        total = await self.db.scalar(count_query)
        result = await self.db.execute(query.offset(offset).limit(limit))
        return list(result.scalars().all()), int(total or 0)

    async def list_active_promotions(self, now: datetime) -> List[Promotion]:
        result = await self.db.execute(
            select(Promotion)
            .where(
                Promotion.status == PromotionStatus.ACTIVE.value,
                Promotion.start_date <= now,
                Promotion.end_date >= now,
            )
            .order_by(Promotion.end_date.asc())
        )
        return list(result.scalars().all())

    async def promotion_stats(self, promotion_id: int) -> PromotionStats:
        result = await self.db.execute(
            select(
                func.count(UserPromotion.id),
                func.sum(UserPromotion.discount_amount),
                func.count(func.distinct(UserPromotion.user_id)),
                func.avg(UserPromotion.discount_amount),
            ).where(UserPromotion.promotion_id == promotion_id)
        )
        total_usage, total_discount, unique_users, average_discount = result.one()
        return PromotionStats(
            total_usage=int(total_usage or 0),
            total_discount=Decimal(str(total_discount or 0)),
            unique_users=int(unique_users or 0),
            average_discount=Decimal(str(average_discount or 0)),
        )

    async def add_promotion(self, promotion: Promotion) -> Promotion:
        self.db.add(promotion)
        await self.db.flush()
        return promotion

    async def add_promo_code(self, promo_code: PromoCode) -> PromoCode:
        self.db.add(promo_code)
        await self.db.flush()
        return promo_code

    async def add_user_promotion(self, user_promotion: UserPromotion) -> UserPromotion:
        self.db.add(user_promotion)
        await self.db.flush()
        return user_promotion

    async def save(self, obj) -> None:
        self.db.add(obj)
        await self.db.flush()

    async def delete_promotion(self, promotion_id: int) -> bool:
        # promo_codes and user_promotions go with it via ON DELETE CASCADE
        result = await self.db.execute(delete(Promotion).where(Promotion.id == promotion_id))
        return (result.rowcount or 0) > 0

    @asynccontextmanager
    async def lock_promotion(self, promotion_id: int) -> AsyncIterator[Optional[Promotion]]:
        # Row lock lives until the enclosing transaction ends
        result = await self.db.execute(
            select(Promotion)
            .where(Promotion.id == promotion_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        yield result.scalar_one_or_none()

    @asynccontextmanager
    async def lock_promo_code(self, promo_code_id: int) -> AsyncIterator[Optional[PromoCode]]:
        # Row lock lives until the enclosing transaction ends
        result = await self.db.execute(
            select(PromoCode)
            .where(PromoCode.id == promo_code_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        yield result.scalar_one_or_none()

    async def increment_promotion_usage(self, promotion_id: int) -> bool:
        result = await self.db.execute(
            update(Promotion)
            .where(
                Promotion.id == promotion_id,
                or_(Promotion.usage_limit == 0, Promotion.usage_count < Promotion.usage_limit),
            )
            .values(usage_count=Promotion.usage_count + 1)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def increment_promo_code_usage(self, promo_code_id: int) -> bool:
        result = await self.db.execute(
            update(PromoCode)
            .where(
                PromoCode.id == promo_code_id,
                or_(PromoCode.usage_limit == 0, PromoCode.usage_count < PromoCode.usage_limit),
            )
            .values(usage_count=PromoCode.usage_count + 1)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryPromotionRepository(PromotionRepository):
    """
    Process-local repository.

    Each promotion and promo code gets its own asyncio.Lock, mirroring the
    row locks taken in PostgreSQL, as long as a single event loop owns the
    instance.
    """

    def __init__(self):
        self._promotions: Dict[int, Promotion] = {}
        self._promo_codes: Dict[int, PromoCode] = {}
        self._user_promotions: List[UserPromotion] = []
        self._next_ids = {"promotion": 1, "promo_code": 1, "user_promotion": 1}
        self._row_locks: Dict[Tuple[str, int], asyncio.Lock] = {}

    def _row_lock(self, kind: str, pk: int) -> asyncio.Lock:
        return self._row_locks.setdefault((kind, pk), asyncio.Lock())

    def _next_id(self, kind: str) -> int:
        value = self._next_ids[kind]
        self._next_ids[kind] = value + 1
        return value

    @property
    def user_promotions(self) -> List[UserPromotion]:
        return list(self._user_promotions)

    async def find_active_promo_code_by_code(self, code: str) -> Optional[PromoCode]:
        promo_code = await self.find_promo_code_by_code(code)
        if promo_code and promo_code.is_active:
            return promo_code
        return None

    async def find_promo_code_by_code(self, code: str) -> Optional[PromoCode]:
        normalized = normalize_code(code)
        for promo_code in self._promo_codes.values():
            if promo_code.code == normalized:
                return promo_code
        return None

    async def get_promo_code(self, promo_code_id: int) -> Optional[PromoCode]:
        return self._promo_codes.get(promo_code_id)

    async def get_promotion(self, promotion_id: int) -> Optional[Promotion]:
        return self._promotions.get(promotion_id)

    async def count_user_promotion_usage(self, user_id: int, promotion_id: int) -> int:
        return sum(
            1 for up in self._user_promotions
            if up.user_id == user_id and up.promotion_id == promotion_id
        )

    async def count_user_promo_code_usage(self, user_id: int, promo_code_id: int) -> int:
        return sum(
            1 for up in self._user_promotions
            if up.user_id == user_id and up.promo_code_id == promo_code_id
        )

    async def list_promotions(
        self, offset: int, limit: int, status: Optional[str] = None
    ) -> Tuple[List[Promotion], int]:
        promotions = [
            p for p in self._promotions.values()
            if not status or p.status == status
        ]
        promotions.sort(key=lambda p: (p.created_at, p.id), reverse=True)
        return promotions[offset:offset + limit], len(promotions)

    async def list_active_promotions(self, now: datetime) -> List[Promotion]:
        active = [
            p for p in self._promotions.values()
            if p.status == PromotionStatus.ACTIVE.value and p.start_date <= now <= p.end_date
        ]
        return sorted(active, key=lambda p: p.end_date)

    async def promotion_stats(self, promotion_id: int) -> PromotionStats:
        rows = [up for up in self._user_promotions if up.promotion_id == promotion_id]
        total_discount = sum((Decimal(str(up.discount_amount)) for up in rows), Decimal("0"))
        return PromotionStats(
            total_usage=len(rows),
            total_discount=total_discount,
            unique_users=len({up.user_id for up in rows}),
            average_discount=total_discount / len(rows) if rows else Decimal("0"),
        )

    async def add_promotion(self, promotion: Promotion) -> Promotion:
        if promotion.id is None:
            promotion.id = self._next_id("promotion")
        now = _utcnow()
        promotion.created_at = promotion.created_at or now
        promotion.updated_at = promotion.updated_at or now
        self._promotions[promotion.id] = promotion
        return promotion

    async def add_promo_code(self, promo_code: PromoCode) -> PromoCode:
        if promo_code.id is None:
            promo_code.id = self._next_id("promo_code")
        now = _utcnow()
        promo_code.created_at = promo_code.created_at or now
        promo_code.updated_at = promo_code.updated_at or now
        self._promo_codes[promo_code.id] = promo_code
        return promo_code

    async def add_user_promotion(self, user_promotion: UserPromotion) -> UserPromotion:
        if user_promotion.id is None:
            user_promotion.id = self._next_id("user_promotion")
        user_promotion.used_at = user_promotion.used_at or _utcnow()
        self._user_promotions.append(user_promotion)
        return user_promotion

    async def save(self, obj) -> None:
        obj.updated_at = _utcnow()

    async def delete_promotion(self, promotion_id: int) -> bool:
        if self._promotions.pop(promotion_id, None) is None:
            return False
        self._promo_codes = {
            pk: pc for pk, pc in self._promo_codes.items() if pc.promotion_id != promotion_id
        }
        self._user_promotions = [
            up for up in self._user_promotions if up.promotion_id != promotion_id
        ]
        return True

    @asynccontextmanager
    async def lock_promotion(self, promotion_id: int) -> AsyncIterator[Optional[Promotion]]:
        async with self._row_lock("promotion", promotion_id):
            yield self._promotions.get(promotion_id)

    @asynccontextmanager
    async def lock_promo_code(self, promo_code_id: int) -> AsyncIterator[Optional[PromoCode]]:
        async with self._row_lock("promo_code", promo_code_id):
            yield self._promo_codes.get(promo_code_id)

    async def increment_promotion_usage(self, promotion_id: int) -> bool:
        promotion = self._promotions.get(promotion_id)
        if promotion is None:
            return False
        if promotion.usage_limit and promotion.usage_count >= promotion.usage_limit:
            return False
        promotion.usage_count += 1
        return True

    async def increment_promo_code_usage(self, promo_code_id: int) -> bool:
        promo_code = self._promo_codes.get(promo_code_id)
        if promo_code is None:
            return False
        if promo_code.usage_limit and promo_code.usage_count >= promo_code.usage_limit:
            return False
        promo_code.usage_count += 1
        return True
