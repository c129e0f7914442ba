import asyncio
from sqlalchemy import update
from inbox.database import AsyncSessionLocal
from inbox.models import User

async def make_moderator(username: str, revoke: bool = False):
    async with AsyncSessionLocal() as session:
        result = await session.execute(
            update(User).where(User.username == username).values(is_moderator=not revoke)
        )
        await session.commit()
        if result.rowcount > 0:
            state = "no longer" if revoke else "now"
            print(f"User {username} is {state} a moderator.")
        else:
            print(f"User {username} not found.")

if __name__ == "__main__":
    import sys
    if len(sys.argv) < 2:
        print("Usage: python set_moderator.py <username> [--revoke]")
    else:
        asyncio.run(make_moderator(sys.argv[1], revoke="--revoke" in sys.argv[2:]))
