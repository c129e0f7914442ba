from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession
from ..config import settings
from ..database import get_db
from ..models import User
from ..schemas import ShareRequest, ShareResponse
from ..auth import get_current_user
from ..limiter import limiter
from ..services import share_service

router = APIRouter()

@router.post("/share", response_model=ShareResponse)
@limiter.limit(settings.SHARE_RATE_LIMIT)
async def share(request: Request, payload: ShareRequest, current_user: User = Depends(get_current_user), db: AsyncSession = Depends(get_db)):
    result = await share_service.share_content(
        db,
        current_user.id,
        payload.recipient_ids,
        payload.content_type,
        payload.content_id,
        payload.message,
    )
    # Nothing delivered means the whole request failed
    status_code = 200 if result.success else 400
    return JSONResponse(status_code=status_code, content=result.model_dump(mode="json", exclude_none=True))
