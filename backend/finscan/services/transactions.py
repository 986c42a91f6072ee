"""
Transaction store access used by the extraction pipeline.

Only creation and owner-scoped reads live here; transaction CRUD and
analytics are owned by the transaction service.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from finscan.db.session import session_scope
from finscan.models.documents import Transaction

logger = logging.getLogger(__name__)

MAX_DESCRIPTION_CHARS = 200


class TransactionRepository:

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def create(
        self,
        *,
        owner_id:        uuid.UUID,
        type:            str,
        amount:          float,
        category:        str,
        description:     str | None,
        date:            datetime,
        source:          str,
        metadata:        dict,
        receipt_url:     str | None = None,
        document_job_id: uuid.UUID | None = None,
    ) -> Transaction:
        txn = Transaction(
            id=uuid.uuid4(),
            owner_id=owner_id,
            type=type,
            amount=amount,
            category=category,
            description=(description or "")[:MAX_DESCRIPTION_CHARS] or None,
            date=date,
            source=source,
            receipt_url=receipt_url,
            tx_metadata=metadata,
            document_job_id=document_job_id,
        )
        async with session_scope(self._session_factory) as session:
            session.add(txn)
            await session.flush()

        logger.debug(
            "Transaction created | id=%s owner=%s source=%s amount=%.2f",
            txn.id, owner_id, source, amount,
        )
        return txn

    async def get_for_owner(self, txn_id: uuid.UUID, owner_id: uuid.UUID) -> Transaction | None:
        async with session_scope(self._session_factory) as session:
            return await session.scalar(
                select(Transaction).where(
                    Transaction.id == txn_id,
                    Transaction.owner_id == owner_id,
                )
            )
