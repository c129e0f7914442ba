from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from ..database import get_db
from ..models import User
from ..auth import get_current_moderator
from ..schemas import DeliveryStats
from ..services import message_service

router = APIRouter(prefix="/admin", tags=["admin"])

@router.get("/status")
async def get_status(current_moderator: User = Depends(get_current_moderator)):
    return {"status": "ok", "message": "Moderator authorization active"}

@router.get("/delivery-stats", response_model=DeliveryStats)
async def delivery_stats(
    current_moderator: User = Depends(get_current_moderator),
    db: AsyncSession = Depends(get_db)
):
    """Share of messages carrying delivery and read stamps."""
    return await message_service.get_delivery_stats(db)
