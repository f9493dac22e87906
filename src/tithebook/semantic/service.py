"""Semantic name matching via an Ollama model.

Fallback for names the fuzzy matcher cannot place with high confidence.
Features:
- Ollama integration (localhost, LAN, or remote with auth header)
- Verdict caching, positive and negative, with prompt version tracking
- Fixed retry count with exponential backoff
- Bounded number of concurrent model calls

Privacy Constraints:
- Never log names or prompts at INFO level
- Remote Ollama: auth header support, no PII in logs
"""

from __future__ import annotations

import hashlib
import json
import logging
import threading
import time
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import httpx

from ..similarity import normalize_for_similarity
from ..state_store import StorageUnavailableError
from ..vision.prompts import parse_json_response
from .prompts import PROMPT_VERSION, NameMatchPrompt

if TYPE_CHECKING:
    from ..config import SemanticConfig
    from ..state_store import StateStore

logger = logging.getLogger(__name__)

RETRY_STATUSES = frozenset({429, 500, 502, 503, 504})


class SemanticError(Exception):
    """Base exception for semantic matching errors."""

    pass


class SemanticRateLimitedError(SemanticError):
    """The model server is still throttling after all retries."""

    pass


@dataclass
class SemanticVerdict:
    """Model verdict for one name (``member_id`` None means no candidate fits)."""

    member_id: str | None
    confidence: float
    cached: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "member_id": self.member_id,
            "confidence": self.confidence,
            "cached": self.cached,
        }


class RequestSlots:
    """Caps how many name-matching calls are in flight across threads."""

    def __init__(self, limit: int = 2) -> None:
        self.limit = max(1, limit)
        self._slots = threading.BoundedSemaphore(self.limit)
        self._in_flight = 0
        self._count_lock = threading.Lock()

    @contextmanager
    def hold(self, timeout: float | None = None) -> Iterator[bool]:
        """Yield True while a slot is held, or False if none freed up in time."""
        if not self._slots.acquire(timeout=timeout):
            yield False
            return
        with self._count_lock:
            self._in_flight += 1
        try:
            yield True
        finally:
            with self._count_lock:
                self._in_flight -= 1
            self._slots.release()

    @property
    def in_flight(self) -> int:
        with self._count_lock:
            return self._in_flight


def _message_content(response: httpx.Response) -> str | None:
    """Assistant text from an Ollama chat reply, or None for a malformed body."""
    try:
        data = response.json()
    except ValueError as e:
        logger.warning("Ollama reply is not JSON: %s", e)
        return None
    message = data.get("message") if isinstance(data, dict) else None
    if not isinstance(message, dict):
        logger.warning("Ollama reply has no message object")
        return None
    content = message.get("content")
    return content if isinstance(content, str) else None


def candidate_set_hash(candidates: Sequence[tuple[str, str]]) -> str:
    """Order-independent hash of a candidate list."""
    joined = "\n".join(sorted(f"{member_id}:{name}" for member_id, name in candidates))
    return hashlib.sha256(joined.encode()).hexdigest()[:16]


class SemanticMatcher:
    """LLM-assisted matching of one extracted name against roster candidates.

    No learned-state lock is held while the model is called; the verdict
    cache is written after the response arrives.
    """

    def __init__(self, state_store: StateStore | None, semantic_config: SemanticConfig) -> None:
        """Initialize the matcher.

        Args:
            state_store: Store holding the verdict cache (None = no caching).
            semantic_config: Model, endpoint and retry settings.
        """
        self.store = state_store
        self.config = semantic_config
        self._prompt = NameMatchPrompt()

        # Support formats: "Bearer token" or "Custom-Header: value"
        headers = {}
        if self.config.auth_header:
            if ":" in self.config.auth_header:
                key, value = self.config.auth_header.split(":", 1)
                headers[key.strip()] = value.strip()
            else:
                headers["Authorization"] = self.config.auth_header

        self._client = httpx.Client(
            timeout=httpx.Timeout(
                connect=10.0,
                read=float(self.config.timeout_seconds),
                write=30.0,
                pool=10.0,
            ),
            headers=headers,
        )
        self._slots = RequestSlots(self.config.max_concurrent)

    @property
    def is_enabled(self) -> bool:
        return self.config.enabled

    @property
    def active_requests(self) -> int:
        return self._slots.in_flight

    def _disable_cache(self, error: Exception) -> None:
        logger.warning("Semantic cache unavailable, continuing without it: %s", error)
        self.store = None

    def _build_cache_key(self, raw_name: str, candidates: Sequence[tuple[str, str]]) -> str:
        """SHA256 key over prompt version, normalized name and candidate set."""
        components = [
            PROMPT_VERSION,
            normalize_for_similarity(raw_name),
            candidate_set_hash(candidates),
        ]
        return hashlib.sha256("|".join(components).encode()).hexdigest()

    def _cached(self, cache_key: str) -> SemanticVerdict | None:
        if self.store is None:
            return None
        try:
            row = self.store.get_semantic_cache(cache_key)
        except StorageUnavailableError as e:
            self._disable_cache(e)
            return None
        if row is None:
            return None
        return SemanticVerdict(
            member_id=row["matched_member_id"],
            confidence=float(row["confidence"] or 0.0),
            cached=True,
        )

    def _store_verdict(self, cache_key: str, verdict: SemanticVerdict) -> None:
        if self.store is None:
            return
        try:
            self.store.set_semantic_cache(
                cache_key,
                verdict.member_id,
                verdict.confidence,
                model=self.config.model,
                prompt_version=PROMPT_VERSION,
                ttl_days=self.config.cache_ttl_days,
            )
        except StorageUnavailableError as e:
            self._disable_cache(e)

    def _call_ollama(self, user_message: str) -> str | None:
        """Call the Ollama chat API with retries; returns the message content.

        Raises:
            SemanticRateLimitedError: Still throttled after the last attempt
        """
        with self._slots.hold(timeout=self.config.timeout_seconds) as held:
            if not held:
                logger.warning(
                    "No free slot for a semantic request after %ds (limit %d)",
                    self.config.timeout_seconds,
                    self._slots.limit,
                )
                return None
            return self._post_with_retries(user_message)

    def _post_with_retries(self, user_message: str) -> str | None:
        url = f"{self.config.ollama_url.rstrip('/')}/api/chat"
        payload = {
            "model": self.config.model,
            "messages": [
                {"role": "system", "content": self._prompt.system_prompt},
                {"role": "user", "content": user_message},
            ],
            "stream": False,
            "format": "json",
        }
        attempts = max(1, self.config.max_attempts)

        for attempt in range(attempts):
            if attempt:
                time.sleep(self.config.backoff_factor * (2 ** (attempt - 1)))
            logger.debug("Calling Ollama model %s (attempt %d)", self.config.model, attempt + 1)
            try:
                response = self._client.post(url, json=payload)
            except httpx.TimeoutException:
                logger.warning("Ollama request timed out after %ds", self.config.timeout_seconds)
                continue
            except httpx.RequestError as e:
                logger.error("Ollama request failed: %s (URL: %s)", e, self.config.ollama_url)
                continue

            if response.status_code in RETRY_STATUSES:
                if response.status_code == 429 and attempt == attempts - 1:
                    raise SemanticRateLimitedError("Ollama server is rate limiting requests")
                logger.warning("Ollama returned %s, retrying", response.status_code)
                continue

            try:
                response.raise_for_status()
            except httpx.HTTPStatusError as e:
                logger.error(
                    "Ollama API error %s for model '%s' at %s",
                    e.response.status_code,
                    self.config.model,
                    self.config.ollama_url,
                )
                return None
            return _message_content(response)

        logger.error("Ollama request failed after %d attempts", attempts)
        return None

    def _parse_verdict(
        self, content: str, candidates: Sequence[tuple[str, str]]
    ) -> SemanticVerdict | None:
        try:
            data = parse_json_response(content)
        except json.JSONDecodeError:
            logger.warning("Could not parse semantic verdict")
            return None

        try:
            confidence = max(0.0, min(1.0, float(data.get("confidence") or 0.0)))
        except (TypeError, ValueError):
            confidence = 0.0

        raw_id = data.get("member_id")
        member_id = None
        if raw_id not in (None, "", "null"):
            wanted = str(raw_id).strip().lower()
            member_id = next((mid for mid, _ in candidates if mid.lower() == wanted), None)
            if member_id is None:
                logger.debug("Model answered with an id outside the candidate list")
                confidence = 0.0
        return SemanticVerdict(member_id=member_id, confidence=confidence)

    def match(
        self, raw_name: str, candidates: Sequence[tuple[str, str]]
    ) -> SemanticVerdict | None:
        """
        Ask the model which candidate a name refers to.

        Args:
            raw_name: Name as read from the page
            candidates: (member_id, display name) pairs

        Returns:
            SemanticVerdict (possibly negative), or None when the model could
            not be reached or answered unusably

        Raises:
            SemanticRateLimitedError: Throttled after all retries
        """
        if not self.is_enabled or not raw_name or not raw_name.strip() or not candidates:
            return None

        cache_key = self._build_cache_key(raw_name, candidates)
        cached = self._cached(cache_key)
        if cached is not None:
            logger.debug("Semantic cache hit")
            return cached

        content = self._call_ollama(self._prompt.format_user_message(raw_name, candidates))
        if content is None:
            return None

        verdict = self._parse_verdict(content, candidates)
        if verdict is not None:
            self._store_verdict(cache_key, verdict)
        return verdict

    def clear_cache(self) -> int:
        if self.store is None:
            return 0
        try:
            return self.store.clear_semantic_cache()
        except StorageUnavailableError as e:
            self._disable_cache(e)
            return 0

    def close(self) -> None:
        """Close HTTP client."""
        self._client.close()

    def __enter__(self) -> SemanticMatcher:
        return self

    def __exit__(self, *args) -> None:
        self.close()
