import logging
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from server.src.modules.docs_db import AuditLog, utc_now

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    handlers=[logging.StreamHandler()]
)
logger = logging.getLogger("docs")


async def write_audit(
    session: AsyncSession,
    action: str,
    actor_id: str | None,
    node_kind: str,
    node_id: str,
    detail: dict[str, Any] | None = None,
) -> None:
    session.add(AuditLog(
        action=action, actor_id=actor_id, node_kind=node_kind,
        node_id=node_id, detail=detail, created_at=utc_now(),
    ))
    await session.commit()
