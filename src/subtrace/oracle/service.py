"""Ollama-backed Extraction Oracle.

Features:
- Ollama integration (localhost, LAN, or remote with auth header)
- JSON-format responses with tolerant parsing
- Response caching keyed by message id, model and prompt version

Privacy Constraints (non-negotiable):
- Never log prompts or raw email content at INFO level
"""

from __future__ import annotations

import hashlib
import json
import logging
import re
from typing import TYPE_CHECKING, Protocol

import httpx

from ..schemas.detection import Category
from ..sources.base import EmailMessage
from .base import ExtractionFailure, OracleResult
from .prompts import PROMPT_VERSION, SubscriptionPrompt

if TYPE_CHECKING:
    from ..config import OracleConfig

logger = logging.getLogger(__name__)


class OracleCache(Protocol):
    """Key-value cache for Oracle responses (implemented by DetectionStore)."""

    def get_oracle_cache(self, cache_key: str) -> dict | None:
        ...

    def set_oracle_cache(
        self, cache_key: str, model: str, response_json: str, ttl_days: int = 30
    ) -> None:
        ...


class OllamaExtractionOracle:
    """Extraction Oracle calling a local or remote Ollama server.

    One HTTP request per email; throttling and the per-call ceiling are the
    extractor's job.
    """

    def __init__(
        self,
        config: OracleConfig,
        cache: OracleCache | None = None,
        client: httpx.Client | None = None,
    ) -> None:
        """Initialize the oracle.

        Args:
            config: Oracle configuration.
            cache: Optional response cache.
            client: Preconfigured HTTP client (tests inject a MockTransport).
        """
        self.config = config
        self.cache = cache
        self.categories = [c.value for c in Category]
        self._prompt = SubscriptionPrompt()

        headers = {}
        if config.auth_header:
            # Support formats: "Bearer token" or "Custom-Header: value"
            if ":" in config.auth_header:
                key, value = config.auth_header.split(":", 1)
                headers[key.strip()] = value.strip()
            else:
                headers["Authorization"] = config.auth_header

        self._client = client or httpx.Client(
            timeout=httpx.Timeout(
                connect=10.0,
                read=float(config.timeout_seconds),
                write=30.0,
                pool=10.0,
            ),
            headers=headers,
        )

    def _build_cache_key(self, message_id: str) -> str:
        key_str = "|".join(["subscription", PROMPT_VERSION, self.config.model, message_id])
        return hashlib.sha256(key_str.encode()).hexdigest()

    def extract(self, email: EmailMessage) -> OracleResult:
        """Extract subscription fields from one email.

        Raises:
            ExtractionFailure: On HTTP error, timeout or unparseable response
        """
        cache_key = self._build_cache_key(email.id)

        if self.cache is not None:
            cached = self.cache.get_oracle_cache(cache_key)
            if cached:
                try:
                    result = OracleResult.from_dict(json.loads(cached["response_json"]))
                    result.model = cached["model"]
                    result.from_cache = True
                    return result
                except (ValueError, KeyError) as e:
                    logger.warning("Invalid cached oracle response: %s", e)

        content = self._call_ollama(
            email.id,
            self._prompt.system_prompt,
            self._prompt.format_user_message(email, self.categories),
        )

        try:
            data = self._parse_json_response(content)
            result = OracleResult.from_dict(data)
        except ValueError as e:
            raise ExtractionFailure(email.id, f"malformed response: {e}") from e
        result.model = self.config.model

        if self.cache is not None:
            self.cache.set_oracle_cache(
                cache_key=cache_key,
                model=self.config.model,
                response_json=json.dumps(result.to_dict()),
                ttl_days=self.config.cache_ttl_days,
            )
        return result

    def _call_ollama(self, message_id: str, system_prompt: str, user_message: str) -> str:
        """Call Ollama /api/chat and return the message content."""
        url = f"{self.config.ollama_url.rstrip('/')}/api/chat"
        payload = {
            "model": self.config.model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_message},
            ],
            "stream": False,
            "format": "json",
            "options": {"temperature": 0.1},
        }

        logger.debug("Calling Ollama model %s for message %s", self.config.model, message_id)

        try:
            response = self._client.post(url, json=payload)
            response.raise_for_status()
            data = response.json()
        except httpx.TimeoutException as e:
            raise ExtractionFailure(
                message_id, f"timed out after {self.config.timeout_seconds}s"
            ) from e
        except httpx.HTTPStatusError as e:
            raise ExtractionFailure(
                message_id, f"Ollama API error {e.response.status_code}"
            ) from e
        except httpx.RequestError as e:
            raise ExtractionFailure(message_id, f"request failed: {e}") from e
        except ValueError as e:
            raise ExtractionFailure(message_id, f"invalid JSON envelope: {e}") from e

        content = (data.get("message") or {}).get("content", "")
        logger.debug("Ollama %s returned %d chars", self.config.model, len(content))
        return content

    def _parse_json_response(self, content: str) -> dict:
        """Parse JSON from LLM response.

        Handles markdown code fences, surrounding prose and trailing commas.

        Raises:
            json.JSONDecodeError: If content cannot be parsed as a JSON object.
        """
        if not content:
            raise json.JSONDecodeError("Empty response", "", 0)

        content = content.strip()

        # Remove markdown code blocks
        if content.startswith("```json"):
            content = content[7:]
        elif content.startswith("```"):
            content = content[3:]
        if content.endswith("```"):
            content = content[:-3]
        content = content.strip()

        try:
            parsed = json.loads(content)
            if isinstance(parsed, dict):
                return parsed
        except json.JSONDecodeError:
            pass

        # Outermost { ... } block in a mixed text response
        json_match = re.search(r"\{[\s\S]*\}", content)
        if json_match:
            candidate = json_match.group()
            # Trailing commas before } or ]
            cleaned = re.sub(r",\s*([}\]])", r"\1", candidate)
            for text in (candidate, cleaned):
                try:
                    parsed = json.loads(text)
                except json.JSONDecodeError:
                    continue
                if isinstance(parsed, dict):
                    return parsed

        raise json.JSONDecodeError(
            f"Could not parse JSON from response: {content[:200]}...", content, 0
        )

    def close(self) -> None:
        """Close the HTTP client."""
        self._client.close()

    def __enter__(self) -> OllamaExtractionOracle:
        return self

    def __exit__(self, *args) -> None:
        self.close()
