"""Gemini importance classifier with rate-limit-aware retry."""

from __future__ import annotations

import asyncio
import json
import re
from collections.abc import Awaitable, Callable, Sequence
from typing import Any

import structlog
from google import genai
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
)

from .config import GeminiConfig
from .errors import ClassificationError
from .models import ClassificationResult, Importance

logger = structlog.get_logger()

PLACEHOLDER_KEYS = frozenset({"", "sua_chave_api", "your-api-key", "changeme"})
RETRY_INFO_TYPE = "type.googleapis.com/google.rpc.RetryInfo"

PROMPT = """\
Analyze the following email and answer in JSON.

SUBJECT: {subject}
SENDER: {sender}
CONTENT: {body}

INSTRUCTIONS:
1. Classify the importance as "high", "medium" or "low".
2. Write a summary of at most 200 characters.
3. Give your confidence in the analysis (0-100).
4. Extract up to 10 important keywords.

HIGH IMPORTANCE CRITERIA:
- Business proposals or commercial opportunities
- Invitations to important meetings
- Job offers or partnerships
- Urgent or critical matters
- Messages from important clients

ANSWER ONLY WITH STRICT JSON IN THIS FORMAT:
{{"importance": "high|medium|low", "summary": "...", "confidence": 85, "keywords": ["word1", "word2"]}}
"""


def default_result(summary: str) -> ClassificationResult:
    """Medium importance, zero confidence. Used whenever analysis is unavailable."""
    return ClassificationResult(
        importance=Importance.MEDIUM,
        summary=summary,
        confidence=0,
        keywords=(),
    )


# ----------------------------------------------------------------------
# Rate-limit detection and retry-delay extraction
# ----------------------------------------------------------------------


def is_rate_limited(exc: BaseException) -> bool:
    for attr in ("code", "status", "status_code"):
        if getattr(exc, attr, None) == 429:
            return True
    message = str(exc).lower()
    return "429" in message or "quota" in message or "rate limit" in message


def parse_delay(value: Any) -> float | None:
    """Convert ``"13s"``, ``"2m"``, ``"1.5"`` or a number to seconds.

    Bare numbers in strings are seconds; numeric values are milliseconds.
    """
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return value / 1000.0
    if not isinstance(value, str):
        return None

    match = re.fullmatch(r"\s*(\d+(?:\.\d+)?)\s*([smhd]?)\s*", value.lower())
    if match is None:
        return None
    amount = float(match[1])
    factor = {"": 1, "s": 1, "m": 60, "h": 3600, "d": 86400}[match[2]]
    return amount * factor


def delay_from_retry_info(exc: BaseException) -> float | None:
    """Structured ``RetryInfo`` detail attached to the provider error."""
    details = getattr(exc, "errorDetails", None) or getattr(exc, "details", None)
    if isinstance(details, dict):
        # google.genai APIError keeps the whole JSON error body
        error = details.get("error")
        details = error.get("details", []) if isinstance(error, dict) else [details]
    if not isinstance(details, Sequence) or isinstance(details, str):
        return None

    for detail in details:
        if isinstance(detail, dict):
            if detail.get("@type") == RETRY_INFO_TYPE or "retryDelay" in detail:
                delay = parse_delay(detail.get("retryDelay"))
                if delay is not None:
                    return delay
            continue
        # google.rpc.RetryInfo protobuf message
        retry_delay = getattr(detail, "retry_delay", None)
        if retry_delay is not None and hasattr(retry_delay, "seconds"):
            return retry_delay.seconds + getattr(retry_delay, "nanos", 0) / 1e9
    return None


def delay_from_message(exc: BaseException) -> float | None:
    """Free-text ``... retry in 13s.`` hint in the error message."""
    match = re.search(r"retry in\s*(\d+(?:\.\d+)?\s*[smh]?)", str(exc), re.IGNORECASE)
    if match is None:
        return None
    return parse_delay(match[1])


DelayExtractor = Callable[[BaseException], "float | None"]

DELAY_EXTRACTORS: tuple[DelayExtractor, ...] = (delay_from_retry_info, delay_from_message)


def backoff_delay(attempt: int, *, base: float, cap: float) -> float:
    """Exponential backoff in seconds: base, 2*base, 4*base, ... capped."""
    return min(base * 2 ** (attempt - 1), cap)


# ----------------------------------------------------------------------
# Response parsing
# ----------------------------------------------------------------------


def extract_json_object(text: str) -> str | None:
    """Return the first balanced ``{...}`` block in *text*, string-aware."""
    start = text.find("{")
    while start != -1:
        depth = 0
        in_string = False
        escaped = False
        for index in range(start, len(text)):
            char = text[index]
            if in_string:
                if escaped:
                    escaped = False
                elif char == "\\":
                    escaped = True
                elif char == '"':
                    in_string = False
            elif char == '"':
                in_string = True
            elif char == "{":
                depth += 1
            elif char == "}":
                depth -= 1
                if depth == 0:
                    return text[start : index + 1]
        start = text.find("{", start + 1)
    return None


def parse_response(text: str) -> ClassificationResult:
    """Validate the model answer, falling back to the default result."""
    block = extract_json_object(text)
    if block is None:
        logger.warning("classifier_no_json", response=text[:200])
        return default_result("Email received - analysis not available")

    try:
        parsed = json.loads(block)
    except json.JSONDecodeError as exc:
        logger.warning("classifier_invalid_json", error=str(exc), response=block[:200])
        return default_result("Email received - analysis not available")

    importance = Importance.parse(parsed.get("importance")) if isinstance(parsed, dict) else None
    if importance is None:
        logger.warning("classifier_invalid_importance", response=block[:200])
        return default_result("Email received - analysis not available")

    summary = parsed.get("summary")
    if not isinstance(summary, str):
        summary = ""

    confidence = parsed.get("confidence")
    if (
        isinstance(confidence, bool)
        or not isinstance(confidence, (int, float))
        or not 0 <= confidence <= 100
    ):
        confidence = 50

    keywords = parsed.get("keywords")
    if not isinstance(keywords, list):
        keywords = []

    return ClassificationResult(
        importance=importance,
        summary=summary[:200],
        confidence=confidence,
        keywords=tuple(str(k) for k in keywords[:10]),
    )


# ----------------------------------------------------------------------
# Client
# ----------------------------------------------------------------------


class GeminiClassifier:
    """Classifies email importance via Gemini.

    ``analyze`` retries rate-limited calls with the delay suggested by the
    provider, or exponential backoff when no hint is present.  Any other
    provider failure raises :class:`ClassificationError`.
    """

    def __init__(
        self,
        config: GeminiConfig,
        *,
        client: genai.Client | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._config = config
        self._sleep = sleep
        self._client = client

        api_key = config.api_key.get_secret_value()
        if self._client is None and api_key not in PLACEHOLDER_KEYS:
            self._client = genai.Client(api_key=api_key)
        elif self._client is None:
            logger.warning("classifier_disabled", reason="missing_api_key")

    @property
    def enabled(self) -> bool:
        return self._client is not None

    def build_prompt(self, subject: str, body: str, sender: str) -> str:
        return PROMPT.format(
            subject=subject,
            sender=sender,
            body=body[: self._config.body_limit],
        )

    def _wait(self, retry_state: RetryCallState) -> float:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        if exc is not None:
            for extractor in DELAY_EXTRACTORS:
                delay = extractor(exc)
                if delay is not None:
                    logger.info(
                        "classifier_retry_hint",
                        extractor=extractor.__name__,
                        delay_seconds=delay,
                    )
                    return delay
        return backoff_delay(
            retry_state.attempt_number,
            base=self._config.base_delay_seconds,
            cap=self._config.max_delay_seconds,
        )

    def _before_sleep(self, retry_state: RetryCallState) -> None:
        logger.warning(
            "classifier_rate_limited",
            attempt=retry_state.attempt_number,
            max_attempts=self._config.max_attempts,
            delay_seconds=retry_state.next_action.sleep if retry_state.next_action else None,
        )

    async def _generate(self, prompt: str) -> str:
        assert self._client is not None
        response = await self._client.aio.models.generate_content(
            model=self._config.model,
            contents=prompt,
        )
        return response.text or ""

    async def analyze(self, subject: str, body: str, sender: str) -> ClassificationResult:
        """Classify one email.

        Returns the default medium result when no API key is configured.
        Raises :class:`ClassificationError` on non-rate-limit failures or
        when rate-limit retries are exhausted.
        """
        if self._client is None:
            return default_result("Email received - AI analysis not available")

        prompt = self.build_prompt(subject, body, sender)
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self._config.max_attempts),
            wait=self._wait,
            retry=retry_if_exception(is_rate_limited),
            before_sleep=self._before_sleep,
            sleep=self._sleep,
            reraise=True,
        )

        try:
            text = await retrying(self._generate, prompt)
        except Exception as exc:
            logger.error(
                "classifier_failed",
                rate_limited=is_rate_limited(exc),
                error=str(exc),
            )
            raise ClassificationError(f"email analysis failed: {exc}") from exc

        return parse_response(text)

    async def test_connection(self) -> bool:
        if self._client is None:
            return False
        try:
            await self._generate("Connection test")
        except Exception as exc:
            logger.warning("classifier_connection_test_failed", error=str(exc))
            return False
        return True
