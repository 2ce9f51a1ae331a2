"""
API dependencies
"""
from dataclasses import dataclass

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.ext.asyncio import AsyncSession

from dentashop.core.database import get_db
from dentashop.core.security import decode_token
from dentashop.services.promotion_repository import SqlAlchemyPromotionRepository
from dentashop.services.promotion_service import PromotionService

security = HTTPBearer()


@dataclass
class CurrentUser:
    """Identity carried by the storefront's access token."""
    id: int
    is_admin: bool = False


async def get_promotion_service(db: AsyncSession = Depends(get_db)) -> PromotionService:
    """Promotion service bound to the request's session"""
    return PromotionService(SqlAlchemyPromotionRepository(db))


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> CurrentUser:
    """Get current authenticated user"""
    payload = decode_token(credentials.credentials)

    if not payload or payload.get("type") != "access":
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token"
        )

    try:
        user_id = int(payload.get("sub"))
    except (TypeError, ValueError):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token subject"
        )

    return CurrentUser(id=user_id, is_admin=bool(payload.get("is_admin", False)))


async def get_current_admin(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
    """Require admin user"""
    if not user.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required"
        )
    return user
