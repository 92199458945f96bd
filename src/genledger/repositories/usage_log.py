"""UsageLog repository for genledger."""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from genledger.models.usage_log import UsageLog


class UsageLogRepository:
    """Repository for UsageLog analytics records."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def add(self, log: UsageLog) -> UsageLog:
        self.session.add(log)
        await self.session.flush()
        return log

    async def list_by_owner(self, owner_id: str, action: str | None = None) -> list[UsageLog]:
        stmt = select(UsageLog).where(UsageLog.owner_id == owner_id)  # type: ignore[arg-type]
        if action is not None:
            stmt = stmt.where(UsageLog.action == action)  # type: ignore[arg-type]
        result = await self.session.execute(
            stmt.order_by(UsageLog.created_at.asc())  # type: ignore[attr-defined]
        )
        return list(result.scalars().all())
