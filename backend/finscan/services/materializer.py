"""
Transaction Materializer

Turns extraction results into persisted transactions.

Receipt rule (confidence gate):
    persist iff confidence > threshold (0.7) AND amount is present
    confidence is trusted verbatim; 0.7 itself does NOT pass

Statement rule (partial-failure isolation):
    every line is an independent attempt; a line that fails to persist is
    logged and skipped, the rest of the batch is still written
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone

from finscan.models.documents import Transaction
from finscan.processing.patterns import normalize_statement_date
from finscan.schemas.documents import (
    DEFAULT_CATEGORY,
    ReceiptExtraction,
    StatementLine,
    TransactionSource,
)
from finscan.services.transactions import TransactionRepository

logger = logging.getLogger(__name__)

RECEIPT_CONFIDENCE_THRESHOLD = 0.7
STATEMENT_LINE_CONFIDENCE = 0.8


def parse_transaction_date(value: str) -> datetime:
    """
    ISO 8601 first (a trailing "Z" is read as UTC), then the US layouts
    statements print (01/15/2024, 01-15-24). Naive results are taken as UTC.
    Raises ValueError when neither reading works.
    """
    text = value.strip()
    if text[-1:] in ("Z", "z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        normalized = normalize_statement_date(text)
        if normalized is None:
            raise
        parsed = datetime.fromisoformat(normalized)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class TransactionMaterializer:

    def __init__(
        self,
        transactions:         TransactionRepository,
        confidence_threshold: float = RECEIPT_CONFIDENCE_THRESHOLD,
    ) -> None:
        self._transactions = transactions
        self._threshold = confidence_threshold

    # ------------------------------------------------------------------
    # Receipts
    # ------------------------------------------------------------------

    def should_materialize_receipt(self, extraction: ReceiptExtraction) -> bool:
        return extraction.confidence > self._threshold and bool(extraction.amount)

    async def materialize_receipt(
        self,
        *,
        job_id:          uuid.UUID,
        owner_id:        uuid.UUID,
        extraction:      ReceiptExtraction,
        ocr_text:        str,
        stored_filename: str,
    ) -> Transaction | None:
        """Create the receipt's expense transaction, or return None if gated out."""
        if not self.should_materialize_receipt(extraction):
            logger.info(
                "Receipt below gate, no transaction | job=%s confidence=%.2f amount=%s",
                job_id, extraction.confidence, extraction.amount,
            )
            return None

        when = datetime.now(timezone.utc)
        if extraction.date:
            try:
                when = parse_transaction_date(extraction.date)
            except ValueError:
                logger.info("Receipt date unparsable, using now | job=%s date=%r", job_id, extraction.date)

        txn = await self._transactions.create(
            owner_id=owner_id,
            type="expense",
            amount=abs(float(extraction.amount)),
            category=extraction.category or DEFAULT_CATEGORY,
            description=f"{extraction.merchant or 'Receipt'} - Auto-extracted",
            date=when,
            source=TransactionSource.RECEIPT.value,
            receipt_url=f"/uploads/{stored_filename}",
            metadata={
                "confidence":   extraction.confidence,
                "originalText": ocr_text,
                "merchant":     extraction.merchant,
                "items":        [item.model_dump() for item in extraction.items],
            },
            document_job_id=job_id,
        )
        logger.info("Receipt materialized | job=%s transaction=%s amount=%.2f", job_id, txn.id, txn.amount)
        return txn

    # ------------------------------------------------------------------
    # Statements
    # ------------------------------------------------------------------

    async def materialize_statement(
        self,
        *,
        job_id:   uuid.UUID,
        owner_id: uuid.UUID,
        lines:    list[StatementLine],
        source:   TransactionSource,
    ) -> list[Transaction]:
        created: list[Transaction] = []
        for index, line in enumerate(lines, start=1):
            try:
                txn = await self._transactions.create(
                    owner_id=owner_id,
                    type=line.type,
                    amount=abs(line.amount),
                    category=line.category or DEFAULT_CATEGORY,
                    description=line.description,
                    date=parse_transaction_date(line.date),
                    source=source.value,
                    metadata={
                        "confidence":   STATEMENT_LINE_CONFIDENCE,
                        "originalText": line.description,
                    },
                    document_job_id=job_id,
                )
            except Exception as exc:
                logger.warning(
                    "Statement line skipped | job=%s line=%d error=%s", job_id, index, exc,
                )
                continue
            created.append(txn)

        logger.info(
            "Statement materialized | job=%s lines=%d created=%d",
            job_id, len(lines), len(created),
        )
        return created
