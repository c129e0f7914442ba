from typing import Optional
from jose import JWTError, jwt
from fastapi import Depends, Query
from fastapi.security import OAuth2PasswordBearer
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select
from .database import get_db
from .models import User
from .config import settings
from .exceptions import UnauthorizedError, ForbiddenError

SECRET_KEY = settings.SECRET_KEY
ALGORITHM = settings.ALGORITHM

# Tokens are minted by the auth platform; tokenUrl only documents where clients get one
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="auth/token", auto_error=False)

def decode_user_id(token: Optional[str]) -> int:
    """Return the user id carried in the token's ``sub`` claim or raise UnauthorizedError."""
    if not token:
        raise UnauthorizedError("Could not validate credentials")
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
        subject = payload.get("sub")
        token_type = payload.get("type", "access")
        if subject is None or token_type != "access":
            raise UnauthorizedError("Could not validate credentials")
        return int(subject)
    except (JWTError, ValueError):
        raise UnauthorizedError("Could not validate credentials")

async def get_current_user(
    token: Optional[str] = Depends(oauth2_scheme),
    token_query: Optional[str] = Query(None, alias="token"),
    db: AsyncSession = Depends(get_db)
) -> User:
    # Try query param if header is missing
    user_id = decode_user_id(token or token_query)

    result = await db.execute(select(User).where(User.id == user_id))
    user = result.scalars().first()
    if user is None:
        raise UnauthorizedError("Could not validate credentials")
    return user

async def get_current_moderator(current_user: User = Depends(get_current_user)) -> User:
    if not current_user.is_moderator:
        raise ForbiddenError("The user does not have enough privileges")
    return current_user
