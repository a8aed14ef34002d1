"""LLM fallback client for payee cleanup.

Talks to an OpenAI-compatible chat-completions endpoint or the Anthropic
messages endpoint, asks for a cleaned payee name plus an optional reusable
rule, and maps every failure to a typed LLMError so callers can decide on
retry policy from ``error.retryable``.
"""
from __future__ import annotations

import json
import logging
import os
import re
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

import requests

from payee_cleanup.models.rules import PatternType, RuleDraft
from payee_cleanup.services.errors import (
    LLMAuthenticationError,
    LLMConnectionError,
    LLMError,
    LLMModelError,
    LLMRateLimitError,
    LLMResponseParsingError,
    LLMServiceUnavailableError,
    LLMUnexpectedError,
    LLMValidationError,
    ValidationError,
)
from payee_cleanup.services.rule_matcher import validate_rule_fields

logger = logging.getLogger(__name__)

# Shared with the orchestrator, which uses it for rules it derives itself.
DEFAULT_CONFIDENCE = float(os.getenv("PAYEE_CLEANUP_DEFAULT_CONFIDENCE", "0.5"))

ANTHROPIC_URL = "https://api.anthropic.com/v1/messages"
OPENAI_BASE_URL = "https://api.openai.com/v1"

SYSTEM_PROMPT = """You are a financial transaction payee name cleanup assistant. Your job is to convert messy, raw payee names from bank transactions into clean, consistent names that are easier to read and categorize.

Rules for cleaning up payee names:
1. Remove transaction details like reference numbers, dates and card numbers
2. Remove generic payment method descriptions (e.g., "PAYMENT", "DEBIT", "CARD PURCHASE")
3. Fix capitalization: avoid ALL CAPS, use Title Case for business names
4. Keep names consistent (e.g., "McDonald's", not "McDonalds" or "Mcdonald")
5. Spell out common abbreviations when obvious
6. Drop location identifiers unless they distinguish the merchant (e.g., "STARBUCKS MAIN ST" -> "Starbucks")
7. Preserve meaningful information about the transaction purpose

Response format (JSON only):
{
  "cleaned_payee": "The cleaned payee name",
  "confidence": 0.95,
  "rule_suggestion": {
    "pattern": "text that matches the original name",
    "pattern_type": "EXACT | CONTAINS | STARTS_WITH | REGEX",
    "replacement": "consistent replacement name",
    "explanation": "why this rule makes sense"
  }
}
Set "rule_suggestion" to null when there is no reusable pattern. Patterns are matched case-sensitively against the raw payee name."""

HEALTH_CHECK_PROMPT = "Hello, this is a health check. Please respond with 'OK'."

# Failures worth another attempt inside a single call.
_TRANSIENT = (LLMConnectionError, LLMRateLimitError, LLMServiceUnavailableError)


@dataclass
class LLMConfig:
    """Connection settings for the LLM provider."""
    provider: str = "openai"
    api_key: Optional[str] = None
    model: str = "gpt-4o-mini"
    base_url: str = OPENAI_BASE_URL
    timeout: float = 30.0
    max_retries: int = 2
    temperature: float = 0.2
    max_tokens: int = 500
    backoff_seconds: float = 0.1

    def __post_init__(self) -> None:
        # A negative retry count would skip the request loop entirely.
        self.max_retries = max(0, int(self.max_retries))

    @classmethod
    def from_env(cls) -> "LLMConfig":
        provider = os.getenv("LLM_PRIMARY_PROVIDER", "openai").strip().lower()
        if provider == "anthropic":
            api_key = os.getenv("ANTHROPIC_API_KEY")
            model = os.getenv("ANTHROPIC_MODEL", "claude-sonnet-4-20250514")
            base_url = os.getenv("ANTHROPIC_URL", ANTHROPIC_URL)
        else:
            api_key = os.getenv("OPENAI_API_KEY")
            model = os.getenv("OPENAI_MODEL", "gpt-4o-mini")
            base_url = os.getenv("OPENAI_BASE_URL", OPENAI_BASE_URL)
        return cls(
            provider=provider,
            api_key=api_key,
            model=model,
            base_url=base_url.rstrip("/"),
            timeout=float(os.getenv("LLM_TIMEOUT_SECONDS", "30")),
            max_retries=max(0, int(os.getenv("LLM_MAX_RETRIES", "2"))),
            temperature=float(os.getenv("LLM_TEMPERATURE", "0.2")),
            max_tokens=int(os.getenv("LLM_MAX_TOKENS", "500")),
        )


class PayeeLLMClient:
    """
    LLM capability used when no approved rule matches a payee.

    Usage:
        client = PayeeLLMClient()
        cleaned, draft = client.cleanup_payee("ACME STORE LONDON 19OCT", {"transaction_id": "tx_1"})
    """

    def __init__(self, config: Optional[LLMConfig] = None) -> None:
        self.config = config or LLMConfig.from_env()

    @property
    def is_available(self) -> bool:
        return bool(self.config.api_key)

    # ------------------------------------------------------------------ #
    # Public API
    # ------------------------------------------------------------------ #
    def cleanup_payee(
        self,
        original: str,
        context: Optional[Dict[str, str]] = None,
    ) -> Tuple[str, Optional[RuleDraft]]:
        """Return the cleaned payee name and, if the model proposed one, a rule draft."""
        prompt = self._build_cleanup_prompt(original, context or {})
        text = self._complete(SYSTEM_PROMPT, prompt, json_mode=True)
        return self._parse_cleanup_response(text)

    def health_check(self) -> None:
        """Raise an LLMError unless the provider answers a trivial prompt."""
        text = self._complete("You are a helpful assistant.", HEALTH_CHECK_PROMPT, max_tokens=5)
        if "OK" not in text:
            raise LLMUnexpectedError(
                f"Health check failed, unexpected response: {text[:50]!r}",
                provider=self.config.provider,
            )

    # ------------------------------------------------------------------ #
    # Prompting
    # ------------------------------------------------------------------ #
    def _build_cleanup_prompt(self, original: str, context: Dict[str, str]) -> str:
        context_lines = "\n".join(f"{key}: {value}" for key, value in context.items()) or "(none)"
        return f"""Please clean up this raw transaction payee name:

Original payee name: "{original}"

Additional context:
{context_lines}

Respond in the JSON format specified in your instructions."""

    # ------------------------------------------------------------------ #
    # Transport
    # ------------------------------------------------------------------ #
    def _complete(
        self,
        system: str,
        prompt: str,
        max_tokens: Optional[int] = None,
        json_mode: bool = False,
    ) -> str:
        if not self.config.api_key:
            raise LLMAuthenticationError("No API key configured", provider=self.config.provider)

        last_error: Optional[LLMError] = None
        for attempt in range(self.config.max_retries + 1):
            try:
                if self.config.provider == "anthropic":
                    return self._call_anthropic(system, prompt, max_tokens)
                return self._call_openai(system, prompt, max_tokens, json_mode)
            except _TRANSIENT as exc:
                last_error = exc
                if attempt < self.config.max_retries:
                    delay = self.config.backoff_seconds * (2 ** attempt)
                    logger.warning(
                        "LLM call failed (%s), retrying in %.2fs (attempt %d/%d)",
                        exc.detail, delay, attempt + 1, self.config.max_retries,
                    )
                    time.sleep(delay)
        raise last_error

    def _call_openai(self, system: str, prompt: str, max_tokens: Optional[int], json_mode: bool) -> str:
        url = f"{self.config.base_url}/chat/completions"
        headers = {
            "Authorization": f"Bearer {self.config.api_key}",
            "Content-Type": "application/json",
        }
        payload: Dict[str, Any] = {
            "model": self.config.model,
            "messages": [
                {"role": "system", "content": system},
                {"role": "user", "content": prompt},
            ],
            "temperature": self.config.temperature,
            "max_tokens": max_tokens or self.config.max_tokens,
        }
        if json_mode:
            payload["response_format"] = {"type": "json_object"}

        data = self._post(url, headers, payload)
        try:
            return data["choices"][0]["message"]["content"] or ""
        except (KeyError, IndexError, TypeError) as exc:
            raise LLMResponseParsingError(
                f"Unexpected completion payload: {exc!r}", provider=self.config.provider, cause=exc
            )

    def _call_anthropic(self, system: str, prompt: str, max_tokens: Optional[int]) -> str:
        headers = {
            "x-api-key": self.config.api_key,
            "anthropic-version": "2023-06-01",
            "content-type": "application/json",
        }
        payload = {
            "model": self.config.model,
            "system": system,
            "max_tokens": max_tokens or self.config.max_tokens,
            "temperature": self.config.temperature,
            "messages": [{"role": "user", "content": prompt}],
        }
        data = self._post(self.config.base_url, headers, payload)
        return _extract_message_text(data)

    def _post(self, url: str, headers: Dict[str, str], payload: Dict[str, Any]) -> Dict[str, Any]:
        provider = self.config.provider
        try:
            response = requests.post(url, headers=headers, json=payload, timeout=self.config.timeout)
        except requests.Timeout as exc:
            raise LLMConnectionError(f"Request timed out after {self.config.timeout}s", provider, exc)
        except requests.ConnectionError as exc:
            raise LLMConnectionError(f"Connection error: {exc}", provider, exc)
        except requests.RequestException as exc:
            raise LLMUnexpectedError(f"Request failed: {exc}", provider, exc)

        if response.status_code >= 400:
            raise _error_for_status(response, provider)

        try:
            data = response.json()
        except ValueError as exc:
            raise LLMResponseParsingError("Provider returned a non-JSON body", provider, exc)
        if not isinstance(data, dict):
            raise LLMResponseParsingError("Provider returned an unexpected body", provider)
        return data

    # ------------------------------------------------------------------ #
    # Parsing
    # ------------------------------------------------------------------ #
    def _parse_cleanup_response(self, text: str) -> Tuple[str, Optional[RuleDraft]]:
        provider = self.config.provider
        data = _parse_llm_json(text, provider)

        cleaned = data.get("cleaned_payee")
        if not isinstance(cleaned, str) or not cleaned.strip():
            raise LLMModelError("Response did not contain a cleaned payee name", provider)
        cleaned = cleaned.strip()

        confidence = _coerce_confidence(data.get("confidence"))
        suggestion = data.get("rule_suggestion")
        if not isinstance(suggestion, dict):
            return cleaned, None
        return cleaned, _draft_from_suggestion(suggestion, cleaned, confidence)


def _error_for_status(response: requests.Response, provider: str) -> LLMError:
    status = response.status_code
    detail = f"HTTP {status}: {response.text[:200]}"
    if status in (401, 403):
        return LLMAuthenticationError(detail, provider)
    if status == 429:
        return LLMRateLimitError(detail, provider)
    if status in (400, 422):
        return LLMValidationError(detail, provider)
    if status in (500, 502, 503, 504, 529):
        return LLMServiceUnavailableError(detail, provider)
    return LLMUnexpectedError(detail, provider)


def _draft_from_suggestion(suggestion: Dict[str, Any], cleaned: str, confidence: float) -> Optional[RuleDraft]:
    pattern = str(suggestion.get("pattern") or "")
    replacement = str(suggestion.get("replacement") or cleaned).strip()
    try:
        pattern_type = PatternType.parse(suggestion.get("pattern_type") or "CONTAINS")
    except ValueError:
        pattern_type = PatternType.CONTAINS

    try:
        validate_rule_fields(pattern, pattern_type, replacement)
    except ValidationError as exc:
        logger.warning("Dropping rule suggestion %r: %s", suggestion, exc.detail)
        return None

    explanation = suggestion.get("explanation")
    return RuleDraft(
        pattern=pattern,
        pattern_type=pattern_type,
        replacement=replacement,
        confidence=confidence,
        explanation=str(explanation) if explanation else None,
    )


def _coerce_confidence(value: Any) -> float:
    try:
        confidence = float(value)
    except (TypeError, ValueError):
        return DEFAULT_CONFIDENCE
    if confidence != confidence:  # NaN
        return DEFAULT_CONFIDENCE
    return min(1.0, max(0.0, confidence))


def _extract_message_text(data: Dict[str, Any]) -> str:
    content = data.get("content", [])
    if isinstance(content, list):
        parts: List[str] = [c.get("text", "") for c in content if isinstance(c, dict)]
        return "\n".join([p for p in parts if p])
    return str(content or "")


def _parse_llm_json(text: str, provider: Optional[str] = None) -> Dict[str, Any]:
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        match = re.search(r"\{.*\}", text or "", re.DOTALL)
        if not match:
            raise LLMResponseParsingError("LLM response was not valid JSON", provider)
        try:
            data = json.loads(match.group(0))
        except json.JSONDecodeError as exc:
            raise LLMResponseParsingError("LLM response was not valid JSON", provider, exc)
    if not isinstance(data, dict):
        raise LLMResponseParsingError("LLM response was not a JSON object", provider)
    return data
