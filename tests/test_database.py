"""
Tests for session scopes and the order-side redemption entry point.
"""
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from dentashop.core import database
from dentashop.core.database import engine_options, get_db, get_db_session
from dentashop.core.exceptions import UsageLimitExceededError
from dentashop.services.promotion_repository import SqlAlchemyPromotionRepository
from dentashop.services.redemption import record_order_redemption


def session_factory(session):
    """Stand-in for AsyncSessionLocal yielding the given mock session."""
    factory = MagicMock()
    factory.return_value.__aenter__ = AsyncMock(return_value=session)
    factory.return_value.__aexit__ = AsyncMock(return_value=False)
    return factory


def test_engine_options_per_environment():
    assert engine_options("sqlite+aiosqlite:///x.db", "production") == {}
    assert engine_options("postgresql+asyncpg://h/db", "development")["pool_size"] == 2
    production = engine_options("postgresql+asyncpg://h/db", "production")
    assert production["pool_pre_ping"] is True
    assert "pool_recycle" in production


class TestGetDbSession:

    @pytest.mark.asyncio
    async def test_commits_on_success(self, mock_db):
        with patch.object(database, "AsyncSessionLocal", session_factory(mock_db)):
            async with get_db_session() as session:
                assert session is mock_db

        mock_db.commit.assert_awaited_once()
        mock_db.rollback.assert_not_called()

    @pytest.mark.asyncio
    async def test_rolls_back_and_reraises(self, mock_db):
        with patch.object(database, "AsyncSessionLocal", session_factory(mock_db)):
            with pytest.raises(RuntimeError):
                async with get_db_session():
                    raise RuntimeError("boom")

        mock_db.rollback.assert_awaited_once()
        mock_db.commit.assert_not_called()

    @pytest.mark.asyncio
    async def test_request_dependency_commits(self, mock_db):
        with patch.object(database, "AsyncSessionLocal", session_factory(mock_db)):
            dependency = get_db()
            assert await dependency.__anext__() is mock_db
            with pytest.raises(StopAsyncIteration):
                await dependency.__anext__()

        mock_db.commit.assert_awaited_once()


class TestRecordOrderRedemption:

    @pytest.mark.asyncio
    async def test_owns_session_when_none_given(self, mock_db):
        recorded = MagicMock()
        with patch.object(database, "AsyncSessionLocal", session_factory(mock_db)), \
                patch("dentashop.services.redemption.PromotionService") as service_cls:
            service_cls.return_value.record_promotion_usage = AsyncMock(return_value=recorded)

            result = await record_order_redemption(42, 1, 2, 99, 15)

        assert result is recorded
        repository = service_cls.call_args[0][0]
        assert isinstance(repository, SqlAlchemyPromotionRepository)
        assert repository.db is mock_db
        service_cls.return_value.record_promotion_usage.assert_awaited_once_with(42, 1, 2, 99, 15)
        mock_db.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_lost_race_rolls_back_owned_session(self, mock_db):
        with patch.object(database, "AsyncSessionLocal", session_factory(mock_db)), \
                patch("dentashop.services.redemption.PromotionService") as service_cls:
            service_cls.return_value.record_promotion_usage = AsyncMock(
                side_effect=UsageLimitExceededError("Ce code promo a atteint sa limite d'utilisation")
            )

            with pytest.raises(UsageLimitExceededError):
                await record_order_redemption(42, 1, 2, 99, 15)

        mock_db.rollback.assert_awaited_once()
        mock_db.commit.assert_not_called()

    @pytest.mark.asyncio
    async def test_uses_callers_transaction(self, mock_db):
        factory = session_factory(MagicMock())
        with patch.object(database, "AsyncSessionLocal", factory), \
                patch("dentashop.services.redemption.PromotionService") as service_cls:
            service_cls.return_value.record_promotion_usage = AsyncMock()

            await record_order_redemption(42, 1, 2, 99, 15, db=mock_db)

        factory.assert_not_called()
        assert service_cls.call_args[0][0].db is mock_db
        mock_db.commit.assert_not_called()
