"""
Structured Extraction Adapter  —  Text → Receipt / Statement Lines
══════════════════════════════════════════════════════════════════

One fixed-shape prompt per document kind is sent to the AI collaborator
(contract: `generate(prompt) -> str`). The reply is de-fenced, parsed as
JSON and validated into pydantic models.

Resilient parsing:
  receipt    → unparsable reply becomes ReceiptExtraction.empty()
               (confidence 0, so it never passes the materialization gate)
  statement  → unparsable reply becomes []; malformed lines are dropped;
               text shorter than 10 chars returns [] without an AI call

Retry policy (per call, manual exponential back-off):
  quota / authentication / permission → fail immediately (not transient)
  503 / 429 / overloaded / network / timeout → wait BASE × 2^(attempt-1)
  anything else                        → fail immediately
  Every attempt is bounded by `timeout_seconds`; a timeout is transient.

Hard failures surface as ExtractionError(AIAnalysisFailed) carrying a
short user-facing sentence (overloaded / rate limited / quota / generic).
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
import time
from typing import Any, Protocol

from pydantic import ValidationError

from finscan.processing.errors import ExtractionError, ExtractionErrorKind
from finscan.schemas.documents import ReceiptExtraction, StatementLine

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

AI_TIMEOUT_SECONDS = 90.0
MAX_ATTEMPTS       = 3
RETRY_BASE_DELAY   = 2.0    # seconds, doubles each retry

MIN_STATEMENT_TEXT_CHARS = 10

EXPENSE_CATEGORIES = (
    "Food & Dining", "Groceries", "Transportation", "Shopping", "Entertainment",
    "Bills & Utilities", "Healthcare", "Travel", "Gas", "Other",
)
INCOME_CATEGORIES = ("Salary", "Business", "Investment", "Gift", "Other Income")

_NON_RETRYABLE_MARKERS = ("quota", "authentication", "permission")
_NON_RETRYABLE_TYPES = ("AuthenticationError", "PermissionDeniedError")
_RETRYABLE_MARKERS = ("503", "429", "overloaded", "network", "timeout", "timed out")
_RETRYABLE_TYPES = (
    "RateLimitError",
    "APITimeoutError",
    "APIConnectionError",
    "InternalServerError",
    "ServiceUnavailableError",
    "TimeoutError",
)

_FENCE_OPEN = re.compile(r"^```(?:json)?\s*", re.IGNORECASE)
_FENCE_CLOSE = re.compile(r"\s*```$")


# ---------------------------------------------------------------------------
# Prompts
# ---------------------------------------------------------------------------

RECEIPT_PROMPT = """\
Analyze the following receipt text and extract transaction information.
Return a JSON object with the following structure:
{{
  "amount": number,
  "merchant": "string",
  "date": "YYYY-MM-DD",
  "category": "string",
  "items": [
    {{
      "name": "string",
      "quantity": number,
      "price": number
    }}
  ],
  "confidence": number (0-1)
}}

Use these expense categories: {expense_categories}

Receipt text:
{text}

If the receipt is unclear or missing critical information, set confidence to a lower value.
Only return the JSON object, no additional text.
"""

STATEMENT_PROMPT = """\
Analyze this bank statement text and extract all transactions.
Return a JSON array of transactions with this structure:
[
  {{
    "date": "YYYY-MM-DD",
    "description": "string",
    "amount": number,
    "type": "income" or "expense",
    "category": "string"
  }}
]

Use these categories:
Income: {income_categories}
Expense: {expense_categories}

Important instructions:
- Look for patterns like dates, amounts, and transaction descriptions
- Identify debit/credit columns or negative/positive amounts
- Convert amounts to positive numbers and use "type" to indicate income/expense
- Be thorough in finding all transactions, even if formatting is inconsistent
- If text quality is poor from OCR, make best effort to interpret

Bank statement text:
{text}

Only return the JSON array, no additional text.
"""


# ---------------------------------------------------------------------------
# AI collaborator
# ---------------------------------------------------------------------------

class AIClient(Protocol):
    async def generate(self, prompt: str) -> str: ...


class LangChainAIClient:
    """
    AIClient backed by a LangChain chat model (ChatOpenAI by default).

    The chat model is built once and reused; ChatOpenAI is safe for
    concurrent ainvoke() calls.
    """

    def __init__(
        self,
        api_key:     str,
        model:       str = "gpt-4o-mini",
        temperature: float = 0.0,
        max_tokens:  int = 2048,
    ) -> None:
        from langchain_openai import ChatOpenAI

        self._model_name = model
        self._llm = ChatOpenAI(
            model=model,
            api_key=api_key,
            temperature=temperature,
            max_tokens=max_tokens,
        )

    async def generate(self, prompt: str) -> str:
        from langchain_core.messages import HumanMessage

        result = await self._llm.ainvoke([HumanMessage(content=prompt)])
        content = result.content
        if isinstance(content, list):
            # content blocks: keep only text parts
            content = "".join(
                part.get("text", "") if isinstance(part, dict) else str(part)
                for part in content
            )
        return content


# ---------------------------------------------------------------------------
# Response parsing helpers
# ---------------------------------------------------------------------------

def strip_code_fences(text: str) -> str:
    cleaned = (text or "").strip()
    cleaned = _FENCE_OPEN.sub("", cleaned)
    cleaned = _FENCE_CLOSE.sub("", cleaned)
    return cleaned.strip()


def parse_receipt_response(text: str) -> ReceiptExtraction:
    try:
        data = json.loads(strip_code_fences(text))
        if not isinstance(data, dict):
            raise ValueError(f"expected a JSON object, got {type(data).__name__}")
        return ReceiptExtraction.model_validate(data)
    except (ValueError, ValidationError) as exc:
        logger.warning("Receipt AI response unparsable | error=%s raw=%.200r", exc, text)
        return ReceiptExtraction.empty()


def parse_statement_response(text: str) -> list[StatementLine]:
    try:
        data = json.loads(strip_code_fences(text))
    except ValueError as exc:
        logger.warning("Statement AI response unparsable | error=%s raw=%.200r", exc, text)
        return []
    if not isinstance(data, list):
        logger.warning("Statement AI response is not a list | type=%s", type(data).__name__)
        return []

    lines: list[StatementLine] = []
    dropped = 0
    for raw in data:
        try:
            lines.append(StatementLine.model_validate(raw))
        except ValidationError:
            dropped += 1
    if dropped:
        logger.info("Statement AI response | kept=%d dropped_malformed=%d", len(lines), dropped)
    return lines


def _is_non_retryable(exc: BaseException) -> bool:
    name = type(exc).__name__
    message = str(exc).lower()
    return name in _NON_RETRYABLE_TYPES or any(m in message for m in _NON_RETRYABLE_MARKERS)


def _is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, asyncio.TimeoutError):
        return True
    name = type(exc).__name__
    message = str(exc).lower()
    return name in _RETRYABLE_TYPES or any(m in message for m in _RETRYABLE_MARKERS)


def user_facing_ai_message(exc: BaseException, subject: str) -> str:
    """Short sentence shown to the user when the AI call finally fails."""
    name = type(exc).__name__
    message = str(exc).lower()
    if "503" in message and "overloaded" in message:
        return "AI service temporarily unavailable. Please try again in a few minutes."
    if "quota" in message:
        return "AI service quota exceeded. Please contact support."
    if "429" in message or name == "RateLimitError":
        return "AI service rate limit exceeded. Please try again later."
    return f"Failed to analyze {subject} with AI. Please try again."


# ---------------------------------------------------------------------------
# Adapter
# ---------------------------------------------------------------------------

class StructuredExtractionAdapter:
    """
    Turns cleaned document text into structured extraction results.

    Usage:
        adapter = StructuredExtractionAdapter(LangChainAIClient(api_key=...))
        receipt = await adapter.analyze_receipt(clean_text)
        lines   = await adapter.analyze_statement(statement_text)
    """

    def __init__(
        self,
        client:          AIClient,
        timeout_seconds: float = AI_TIMEOUT_SECONDS,
        max_attempts:    int   = MAX_ATTEMPTS,
        base_delay:      float = RETRY_BASE_DELAY,
    ) -> None:
        self._client = client
        self._timeout = timeout_seconds
        self._max_attempts = max(1, max_attempts)
        self._base_delay = base_delay

    async def analyze_receipt(self, text: str) -> ReceiptExtraction:
        prompt = RECEIPT_PROMPT.format(
            expense_categories=", ".join(EXPENSE_CATEGORIES),
            text=text,
        )
        reply = await self._generate_with_retry(prompt, subject="receipt")
        result = parse_receipt_response(reply)
        logger.info(
            "Receipt AI | confidence=%.2f amount=%s merchant=%r",
            result.confidence, result.amount, result.merchant,
        )
        return result

    async def analyze_statement(self, text: str) -> list[StatementLine]:
        cleaned = (text or "").strip()
        if len(cleaned) < MIN_STATEMENT_TEXT_CHARS:
            logger.warning("Statement AI skipped | chars=%d (too little text)", len(cleaned))
            return []

        prompt = STATEMENT_PROMPT.format(
            income_categories=", ".join(INCOME_CATEGORIES),
            expense_categories=", ".join(EXPENSE_CATEGORIES),
            text=text,
        )
        reply = await self._generate_with_retry(prompt, subject="bank statement")
        lines = parse_statement_response(reply)
        logger.info("Statement AI | chars=%d lines=%d", len(cleaned), len(lines))
        return lines

    # ------------------------------------------------------------------
    # AI call with retry
    # ------------------------------------------------------------------

    async def _generate_with_retry(self, prompt: str, subject: str) -> str:
        attempt = 1
        while True:
            t0 = time.monotonic()
            try:
                reply = await asyncio.wait_for(self._client.generate(prompt), timeout=self._timeout)
            except Exception as exc:
                if _is_non_retryable(exc) or not _is_retryable(exc):
                    logger.error("AI call failed (non-retryable) | subject=%s error=%r", subject, exc)
                    raise _ai_failure(exc, subject) from exc
                if attempt >= self._max_attempts:
                    logger.error(
                        "AI call failed, retries exhausted | subject=%s attempts=%d error=%r",
                        subject, attempt, exc,
                    )
                    raise _ai_failure(exc, subject) from exc

                delay = self._base_delay * (2 ** (attempt - 1))
                logger.warning(
                    "AI retry | subject=%s attempt=%d/%d delay=%.1fs error=%r",
                    subject, attempt, self._max_attempts, delay, exc,
                )
                await asyncio.sleep(delay)
                attempt += 1
            else:
                logger.debug(
                    "AI call ok | subject=%s attempt=%d elapsed_ms=%.0f",
                    subject, attempt, (time.monotonic() - t0) * 1000,
                )
                return reply


def _ai_failure(exc: BaseException, subject: str) -> ExtractionError:
    return ExtractionError(ExtractionErrorKind.AI_ANALYSIS_FAILED, user_facing_ai_message(exc, subject))
