"""Create (or promote) an admin account and print a bearer token for it.

Usage: python scripts/seed_user.py [username] [email]
"""

import asyncio
import os
import sys

# add project root (one level up from /scripts) to import path
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from server.src.modules.docs_auth import issue_session, upsert_user
from server.src.modules.docs_db import AsyncSessionLocal


async def seed(username: str, email: str | None) -> str:
    async with AsyncSessionLocal() as session:
        user = await upsert_user(session, username=username, email=email, role="admin")
        return await issue_session(session, user.id)


if __name__ == "__main__":
    name = sys.argv[1] if len(sys.argv) > 1 else "admin"
    mail = sys.argv[2] if len(sys.argv) > 2 else None
    token = asyncio.run(seed(name, mail))
    print(f"seeded {name}; token: {token}")
