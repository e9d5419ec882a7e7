"""ExpiredTokenTask - purge tokens past their expiry."""

from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncSession

from petrel.services.supervisor.base import SupervisorTask, TaskResult
from petrel.services.tokens import TokenService


class ExpiredTokenTask(SupervisorTask):
    """Delete expired tokens. They are already rejected at use time."""

    def __init__(self, db_session: AsyncSession) -> None:
        self._tokens = TokenService(db_session)

    @property
    def name(self) -> str:
        return "expired_token"

    async def run(self) -> TaskResult:
        result = TaskResult(task_name=self.name)
        result.handled_count = await self._tokens.purge_expired()
        return result
