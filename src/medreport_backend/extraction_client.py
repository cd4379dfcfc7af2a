"""
Client for the language-model service that turns redacted report text into
structured clinical values.

Failure handling per attempt:
- ``insufficient_quota`` in the error code/type: fail at once, never retried
- HTTP 429, 5xx or a transport failure: exponential backoff with jitter,
  up to ``max_attempts`` attempts in total
- any other HTTP error: fail at once
- a reply that is not a JSON object of the expected shape: fail at once
"""

from __future__ import annotations

import copy
import json
import logging
import random
import re
import time
from typing import Any, Callable, Dict, Optional

import openai
from omegaconf import DictConfig
from pydantic import ValidationError

from .configuration import is_mock_mode
from .errors import ExtractionServiceError, ServiceErrorKind
from .models import ExtractedReport

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = "You are a JSON extractor. Return valid JSON only."

RESPONSE_SHAPE = (
    '{"patient_name": string or null, '
    '"blood_sugar": {"value": number or null, "unit": string or null, "status": string or null} or null, '
    '"cholesterol": {"value": number or null, "unit": string or null, "status": string or null} or null}'
)

QUOTA_EXHAUSTED_CODE = "insufficient_quota"

MOCK_RESULT: Dict[str, Any] = {
    "patient_name": "[REDACTED]",
    "blood_sugar": {"value": 95, "unit": "mg/dL", "status": "Normal"},
    "cholesterol": {"value": 210, "unit": "mg/dL", "status": "High"},
}

# Greedy: from the first "{" to the last "}" of the reply
_JSON_OBJECT = re.compile(r"\{[\s\S]*\}")


def build_prompt(text: str) -> str:
    return (
        "Extract Blood Sugar and Cholesterol values from this text. "
        f"Return valid JSON only, shaped as {RESPONSE_SHAPE}. "
        "The status is a qualitative reading such as Normal, High or Low. "
        "If a value is not present, set it to null. Text:\n\n"
        f"{text}"
    )


def parse_json_payload(content: str) -> Dict[str, Any]:
    """
    Parse the model reply into the expected structure.

    The whole reply is parsed first; if that fails, the first brace-delimited
    object inside it (e.g. inside a Markdown code fence) is tried.

    Raises:
        ExtractionServiceError: kind MALFORMED_RESPONSE
    """
    try:
        data = json.loads(content.strip())
    except json.JSONDecodeError:
        match = _JSON_OBJECT.search(content)
        if match is None:
            raise ExtractionServiceError(
                ServiceErrorKind.MALFORMED_RESPONSE,
                "Failed to parse JSON from OpenAI response",
            )
        try:
            data = json.loads(match.group(0))
        except json.JSONDecodeError as exc:
            raise ExtractionServiceError(
                ServiceErrorKind.MALFORMED_RESPONSE,
                "Failed to parse JSON from OpenAI response",
            ) from exc

    if not isinstance(data, dict):
        raise ExtractionServiceError(
            ServiceErrorKind.MALFORMED_RESPONSE,
            f"Expected a JSON object from OpenAI, got {type(data).__name__}",
        )

    try:
        return ExtractedReport.model_validate(data).model_dump()
    except ValidationError as exc:
        raise ExtractionServiceError(
            ServiceErrorKind.MALFORMED_RESPONSE,
            f"OpenAI response does not match the expected schema: {exc.error_count()} error(s)",
        ) from exc


class StructuredExtractionClient:
    """
    Sends redacted text to the chat completion endpoint and returns the
    extracted values as a plain dictionary.

    The SDK's own retries are disabled so the attempt ceiling here is the
    only one in effect.
    """

    def __init__(
        self,
        *,
        api_key: str = "",
        model: str = "gpt-4o-mini",
        base_url: Optional[str] = None,
        max_attempts: int = 3,
        backoff_base: float = 1.0,
        backoff_jitter: float = 0.3,
        mock_mode: bool = False,
        mock_delay: float = 5.0,
        client: Optional[openai.OpenAI] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.api_key = api_key
        self.model = model
        self.base_url = base_url
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self.backoff_jitter = backoff_jitter
        self.mock_mode = mock_mode
        self.mock_delay = mock_delay
        self._client = client
        self._sleep = sleep

    @classmethod
    def from_settings(cls, settings: DictConfig) -> "StructuredExtractionClient":
        ai = settings.ai
        return cls(
            api_key=str(ai.api_key),
            model=str(ai.model),
            base_url=str(ai.base_url) or None,
            max_attempts=int(ai.max_attempts),
            backoff_base=float(ai.backoff_base_seconds),
            backoff_jitter=float(ai.backoff_jitter_seconds),
            mock_mode=is_mock_mode(settings),
            mock_delay=float(ai.mock_delay_seconds),
        )

    @property
    def client(self) -> openai.OpenAI:
        if self._client is None:
            if not self.api_key:
                raise ExtractionServiceError(
                    ServiceErrorKind.PERMANENT,
                    "OpenAI API key is not configured (set OPENAI_API_KEY or enable USE_MOCK_AI)",
                )
            self._client = openai.OpenAI(api_key=self.api_key, base_url=self.base_url, max_retries=0)
        return self._client

    def build_request(self, redacted_text: str) -> Dict[str, Any]:
        return {
            "model": self.model,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": build_prompt(redacted_text)},
            ],
            "temperature": 0,
        }

    def backoff_delay(self, attempt: int) -> float:
        return self.backoff_base * (2 ** (attempt - 1)) + random.uniform(0, self.backoff_jitter)

    def extract(self, redacted_text: str) -> Dict[str, Any]:
        """
        Extract structured values from already-redacted text.

        Args:
            redacted_text: Text with PII removed

        Returns:
            Mapping with ``patient_name``, ``blood_sugar`` and ``cholesterol``

        Raises:
            ExtractionServiceError: Classified upstream failure
        """
        if self.mock_mode:
            logger.info("Mock mode enabled, returning canned extraction result")
            if self.mock_delay > 0:
                self._sleep(self.mock_delay)
            return copy.deepcopy(MOCK_RESULT)

        request = self.build_request(redacted_text)
        last_error: Optional[ExtractionServiceError] = None

        for attempt in range(1, self.max_attempts + 1):
            try:
                response = self.client.chat.completions.create(**request)
            except openai.APIStatusError as exc:
                error = self._classify(exc, attempt)
            except openai.APIConnectionError as exc:
                error = ExtractionServiceError(
                    ServiceErrorKind.TRANSIENT,
                    f"OpenAI transport error: {exc}",
                    attempts=attempt,
                )
            else:
                return self.parse_response(response)

            if error.kind is not ServiceErrorKind.TRANSIENT:
                logger.error(f"Extraction request failed ({error.kind.value}): {error}")
                raise error

            last_error = error
            if attempt < self.max_attempts:
                delay = self.backoff_delay(attempt)
                logger.warning(
                    f"Transient extraction error (attempt {attempt}/{self.max_attempts}), "
                    f"retrying in {delay:.2f}s: {error}"
                )
                self._sleep(delay)

        raise ExtractionServiceError(
            ServiceErrorKind.TRANSIENT,
            f"{last_error} (gave up after {self.max_attempts} attempts)",
            status_code=last_error.status_code,
            attempts=self.max_attempts,
        )

    def _classify(self, exc: openai.APIStatusError, attempt: int) -> ExtractionServiceError:
        status = exc.status_code
        message = self._error_message(exc)
        code = getattr(exc, "code", None)
        error_type = getattr(exc, "type", None)

        if QUOTA_EXHAUSTED_CODE in (code, error_type):
            return ExtractionServiceError(
                ServiceErrorKind.QUOTA_EXHAUSTED,
                f"OpenAI insufficient_quota: {message}",
                status_code=status,
                attempts=attempt,
            )
        if status == 429 or 500 <= status < 600:
            return ExtractionServiceError(
                ServiceErrorKind.TRANSIENT,
                f"OpenAI transient error: {status} {message}",
                status_code=status,
                attempts=attempt,
            )
        return ExtractionServiceError(
            ServiceErrorKind.PERMANENT,
            f"OpenAI error: {status} {message}",
            status_code=status,
            attempts=attempt,
        )

    @staticmethod
    def _error_message(exc: openai.APIStatusError) -> str:
        body = exc.body
        if isinstance(body, dict) and body.get("message"):
            return str(body["message"])
        return exc.message or f"HTTP {exc.status_code}"

    def parse_response(self, response: Any) -> Dict[str, Any]:
        choices = getattr(response, "choices", None) or []
        message = choices[0].message if choices else None
        content = getattr(message, "content", None)
        if not content or not content.strip():
            raise ExtractionServiceError(
                ServiceErrorKind.MALFORMED_RESPONSE,
                "No content from OpenAI",
            )
        return parse_json_payload(content)
