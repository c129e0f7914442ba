from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select
from typing import List, Optional
import logging
from ..exceptions import MessagingError, NotFoundError, ValidationError
from ..models import ContentType, Food, Restaurant, SharedContent
from ..schemas import ShareFailure, ShareResponse, ShareResult
from . import conversation_service, message_service

logger = logging.getLogger(__name__)

CONTENT_MODELS = {
    ContentType.FOOD: Food,
    ContentType.RESTAURANT: Restaurant,
}

async def get_shared_content_name(db: AsyncSession, content_type: str, content_id: int) -> str:
    model = CONTENT_MODELS.get(content_type)
    if model is None:
        raise ValidationError('Invalid content type. Must be "food" or "restaurant"', field="content_type")
    stmt = select(model.name).where(model.id == content_id)
    name = (await db.execute(stmt)).scalar()
    if name is None:
        raise NotFoundError(f"{content_type} not found")
    return name

async def share_content(
    db: AsyncSession,
    sender_id: int,
    recipient_ids: List[int],
    content_type: str,
    content_id: int,
    message: Optional[str] = None,
) -> ShareResponse:
    name = await get_shared_content_name(db, content_type, content_id)
    text = (message or "").strip() or f"Shared a {content_type}: {name}"

    results: List[ShareResult] = []
    errors: List[ShareFailure] = []

    # Each recipient commits on its own so one failure cannot undo the others
    for recipient_id in recipient_ids:
        try:
            conversation = await conversation_service.get_or_create_conversation(db, sender_id, recipient_id)
            attachment = SharedContent(content_type=content_type, content_id=content_id)
            sent = await message_service.send_message(db, conversation.id, sender_id, text, shared_content=attachment)
            results.append(ShareResult(
                recipient_id=recipient_id,
                conversation_id=conversation.id,
                message_id=sent.id,
                shared_content_id=sent.shared_content.id,
            ))
        except MessagingError as e:
            logger.warning(f"Share to recipient {recipient_id} failed: {e.detail}")
            await db.rollback()
            errors.append(ShareFailure(recipient_id=recipient_id, error=e.detail))

    return ShareResponse(
        success=len(results) > 0,
        shared=len(results),
        total=len(recipient_ids),
        results=results,
        errors=errors or None,
    )
