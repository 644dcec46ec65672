import logging
import math
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx

from smart_library.config import settings
from smart_library.database import get_db_connection
from smart_library.errors import UpstreamError
from smart_library.models import Book
from smart_library.services.http_client import get_http_client

logger = logging.getLogger(__name__)

DEFAULT_RATE_LIMIT_WAIT = 60
DEFAULT_TRANSIENT_WAIT = 30


@dataclass
class SummaryResult:
    """Outcome of a summary request"""
    summary: str
    cached: bool = False
    model: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "summary": self.summary,
            "cached": self.cached,
            "message": "Summary retrieved from cache" if self.cached else "Summary generated successfully",
        }


def _retry_after(response: httpx.Response, default: int) -> int:
    raw = response.headers.get("Retry-After")
    if not raw:
        return default
    try:
        seconds = float(raw)
    except ValueError:
        return default
    # "inf" and "nan" parse as floats but carry no usable wait
    if not math.isfinite(seconds):
        return default
    return max(1, int(seconds))


def classify_response(response: httpx.Response) -> UpstreamError:
    """Map a failed upstream response to an UpstreamError with a retry hint."""
    status = response.status_code
    if status in (401, 403):
        return UpstreamError(
            "AI service authentication failed",
            kind="auth",
            details="The API key may be invalid or expired.",
        )
    if status == 402:
        return UpstreamError(
            "AI service billing issue",
            kind="billing",
            details="The AI account may be out of credits.",
        )
    if status == 429:
        return UpstreamError(
            "AI service rate limit exceeded",
            kind="rate_limited",
            retry_after=_retry_after(response, DEFAULT_RATE_LIMIT_WAIT),
            details="Please wait a minute and try again.",
        )
    return UpstreamError(
        "AI service temporarily unavailable",
        kind="transient",
        retry_after=_retry_after(response, DEFAULT_TRANSIENT_WAIT),
        details=f"Upstream responded with status {status}.",
    )


class SummaryService:
    """Book summaries through the Hugging Face inference API"""

    def __init__(self, api_key: Optional[str] = None, model: Optional[str] = None):
        self.api_key = api_key or settings.hugging_face_api_key
        self.base_url = "https://api-inference.huggingface.co"
        self.model = model or settings.hugging_face_model
        self.timeout = settings.hugging_face_timeout

    def is_available(self) -> bool:
        return bool(self.api_key) and settings.enable_ai_features

    @staticmethod
    def build_prompt(book: Book) -> str:
        description = book.description.strip() or "No description available"
        return (
            f"{book.title} by {book.author}. Category: {book.category}. "
            f"{description}"
        )

    def _log_api_usage(self, characters_used: int, success: bool,
                       status_code: Optional[int] = None, response_time_ms: int = 0) -> None:
        conn = get_db_connection()
        try:
            conn.execute(
                """
                INSERT INTO api_usage_logs (api_name, endpoint, success, status_code, response_time_ms, characters_used)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                ("hugging_face", self.model, success, status_code, response_time_ms, characters_used),
            )
            conn.commit()
        except Exception as e:
            # usage logging must never fail the summary itself
            logger.error(f"Failed to log API usage: {e}")
        finally:
            conn.close()

    async def summarize_book(self, book: Book) -> SummaryResult:
        """
        Generate a 3-5 line catalog summary for a book.

        Raises:
            UpstreamError: when the service is not configured or the API call fails
        """
        if not self.is_available():
            raise UpstreamError(
                "AI summary service is not configured",
                kind="auth",
                details="Set HUGGING_FACE_API_KEY and ENABLE_AI_FEATURES to enable summaries.",
            )

        text = self.build_prompt(book)
        payload = {
            "inputs": text,
            "parameters": {"max_length": 200, "min_length": 40, "do_sample": False},
        }
        headers = {"Authorization": f"Bearer {self.api_key}"}
        url = f"{self.base_url}/models/{self.model}"

        start_time = time.time()
        try:
            client = await get_http_client()
            response = await client.post(url, json=payload, headers=headers, timeout=self.timeout)
        except httpx.TimeoutException as e:
            self._log_api_usage(len(text), False)
            logger.error(f"AI summary request timed out after {self.timeout}s")
            raise UpstreamError(
                "AI service timed out", kind="transient", retry_after=DEFAULT_TRANSIENT_WAIT
            ) from e
        except httpx.RequestError as e:
            self._log_api_usage(len(text), False)
            logger.error(f"AI summary request failed: {e}")
            raise UpstreamError(
                "AI service unreachable", kind="transient", retry_after=DEFAULT_TRANSIENT_WAIT
            ) from e

        response_time_ms = int((time.time() - start_time) * 1000)

        if response.status_code != 200:
            error = classify_response(response)
            self._log_api_usage(len(text), False, response.status_code, response_time_ms)
            if error.kind == "rate_limited":
                logger.warning(f"AI summary rate limited, retry after {error.retry_after}s")
            else:
                logger.error(f"AI summary request failed: {response.status_code} ({error.kind})")
            raise error

        summary = self._extract_summary(response)
        if not summary:
            self._log_api_usage(len(text), False, response.status_code, response_time_ms)
            raise UpstreamError("Failed to generate summary", kind="transient",
                                retry_after=DEFAULT_TRANSIENT_WAIT)

        self._log_api_usage(len(text), True, response.status_code, response_time_ms)
        logger.info(f"Summarized book {book.id}: {len(text)} -> {len(summary)} chars")
        return SummaryResult(summary=summary, cached=False, model=self.model)

    @staticmethod
    def _extract_summary(response: httpx.Response) -> str:
        try:
            data = response.json()
        except ValueError:
            return ""
        # the inference API answers with a list of {"summary_text": ...}
        if isinstance(data, list) and data and isinstance(data[0], dict):
            return str(data[0].get("summary_text") or data[0].get("generated_text") or "").strip()
        return ""
