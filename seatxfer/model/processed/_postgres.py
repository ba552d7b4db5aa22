from __future__ import annotations
from contextlib import asynccontextmanager
from typing import AsyncContextManager, Callable, Optional

from sqlalchemy import delete, insert, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ...helpers import now_utc
from ..orm import ProcessedMessage


@asynccontextmanager
async def _ungated():
    yield


class ProcessedStore:
    """Processed-message gate on the ``processed_messages`` table.

    The primary key does the NX work: a second insert of the same id fails
    with an IntegrityError and the claim is refused.
    """

    def __init__(
        self, *, db: AsyncSession,
        gated: Optional[Callable[[], AsyncContextManager[None]]] = None,
    ) -> None:
        self.db = db
        self.gated = gated or _ungated

    async def claim(self, message_id: str) -> bool:
        try:
            async with self.gated():
                async with self.db.begin():
                    await self.db.execute(
                        insert(ProcessedMessage).values(
                            message_id=message_id, processed_at=now_utc(),
                        )
                    )
        except IntegrityError:
            return False
        return True

    async def release(self, message_id: str) -> None:
        async with self.gated():
            async with self.db.begin():
                await self.db.execute(
                    delete(ProcessedMessage)
                    .where(ProcessedMessage.message_id == message_id)
                )

    async def is_processed(self, message_id: str) -> bool:
        async with self.gated():
            async with self.db.begin():
                result = await self.db.execute(
                    select(ProcessedMessage.message_id)
                    .where(ProcessedMessage.message_id == message_id)
                )
                return result.first() is not None
