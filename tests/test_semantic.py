"""Tests for semantic (LLM) name matching."""

import json
from unittest.mock import MagicMock, patch

import httpx
import pytest

from tithebook.config import SemanticConfig
from tithebook.semantic import (
    PROMPT_VERSION,
    NameMatchPrompt,
    SemanticMatcher,
    SemanticRateLimitedError,
)
from tithebook.semantic.service import RequestSlots, candidate_set_hash
from tithebook.state_store import StateStore

CANDIDATES = [
    ("TAC89JAM|A-12", "Elder Kofi Mensah Yeboah (TAC89JAM|A-12|OLD-001)"),
    ("TAC90AMA", "Mrs Ama Owusu (TAC90AMA)"),
]


def ollama_response(payload, status_code: int = 200) -> MagicMock:
    response = MagicMock()
    response.status_code = status_code
    response.json.return_value = {"message": {"content": json.dumps(payload)}}
    return response


class TestPrompt:
    """Tests for the name-matching prompt."""

    def test_user_message_lists_candidates(self):
        message = NameMatchPrompt().format_user_message("Auntie Amma", CANDIDATES)
        assert "Name on the tithe page: Auntie Amma" in message
        assert "- TAC90AMA: Mrs Ama Owusu (TAC90AMA)" in message

    def test_version(self):
        assert NameMatchPrompt().version == PROMPT_VERSION

    def test_candidate_hash_is_order_independent(self):
        assert candidate_set_hash(CANDIDATES) == candidate_set_hash(list(reversed(CANDIDATES)))
        assert candidate_set_hash(CANDIDATES) != candidate_set_hash(CANDIDATES[:1])


class TestRequestSlots:
    def test_hold_and_release(self):
        slots = RequestSlots(limit=1)
        with slots.hold(timeout=0.1) as held:
            assert held is True
            assert slots.in_flight == 1
            with slots.hold(timeout=0.01) as second:
                assert second is False
        assert slots.in_flight == 0

    def test_released_on_error(self):
        slots = RequestSlots(limit=1)
        with pytest.raises(RuntimeError):
            with slots.hold():
                raise RuntimeError("boom")
        with slots.hold(timeout=0.01) as held:
            assert held is True

    def test_limit_at_least_one(self):
        assert RequestSlots(limit=0).limit == 1


class TestSemanticMatcher:
    """Tests for SemanticMatcher."""

    @pytest.fixture
    def store(self, tmp_path) -> StateStore:
        """Create a fresh StateStore for each test."""
        return StateStore(str(tmp_path / "test.db"), run_migrations=True)

    @pytest.fixture
    def config_enabled(self) -> SemanticConfig:
        return SemanticConfig(enabled=True, max_attempts=3, backoff_factor=0)

    def test_disabled_returns_none(self, store):
        matcher = SemanticMatcher(store, SemanticConfig(enabled=False))
        assert matcher.is_enabled is False
        assert matcher.match("Auntie Amma", CANDIDATES) is None

    def test_no_candidates(self, store, config_enabled):
        matcher = SemanticMatcher(store, config_enabled)
        assert matcher.match("Auntie Amma", []) is None
        assert matcher.match("  ", CANDIDATES) is None

    @patch("tithebook.semantic.service.httpx.Client")
    def test_match_is_cached(
        self, mock_client_class: MagicMock, store: StateStore, config_enabled: SemanticConfig
    ) -> None:
        """A verdict is cached; the model is called once."""
        mock_client = MagicMock()
        mock_client.post.return_value = ollama_response({"member_id": "tac90ama", "confidence": 0.92})
        mock_client_class.return_value = mock_client

        matcher = SemanticMatcher(store, config_enabled)
        first = matcher.match("Auntie Amma", CANDIDATES)
        second = matcher.match("AUNTIE  AMMA", list(reversed(CANDIDATES)))

        assert first.member_id == "TAC90AMA"
        assert first.confidence == pytest.approx(0.92)
        assert first.cached is False
        assert second.member_id == "TAC90AMA"
        assert second.cached is True
        assert mock_client.post.call_count == 1

    @patch("tithebook.semantic.service.httpx.Client")
    def test_negative_verdict_is_cached(
        self, mock_client_class: MagicMock, store: StateStore, config_enabled: SemanticConfig
    ) -> None:
        mock_client = MagicMock()
        mock_client.post.return_value = ollama_response({"member_id": None, "confidence": 0.1})
        mock_client_class.return_value = mock_client

        matcher = SemanticMatcher(store, config_enabled)
        first = matcher.match("Stranger", CANDIDATES)
        second = matcher.match("Stranger", CANDIDATES)

        assert first.member_id is None
        assert second.cached is True
        assert mock_client.post.call_count == 1

    @patch("tithebook.semantic.service.httpx.Client")
    def test_unknown_member_rejected(
        self, mock_client_class: MagicMock, store: StateStore, config_enabled: SemanticConfig
    ) -> None:
        """An id outside the candidate list is not trusted."""
        mock_client = MagicMock()
        mock_client.post.return_value = ollama_response({"member_id": "TAC00XYZ", "confidence": 0.99})
        mock_client_class.return_value = mock_client

        verdict = SemanticMatcher(store, config_enabled).match("Auntie Amma", CANDIDATES)

        assert verdict.member_id is None
        assert verdict.confidence == 0.0

    @patch("tithebook.semantic.service.httpx.Client")
    def test_retries_then_succeeds(
        self, mock_client_class: MagicMock, store: StateStore, config_enabled: SemanticConfig
    ) -> None:
        mock_client = MagicMock()
        mock_client.post.side_effect = [
            ollama_response({}, status_code=503),
            httpx.ConnectError("refused"),
            ollama_response({"member_id": "TAC90AMA", "confidence": 0.8}),
        ]
        mock_client_class.return_value = mock_client

        verdict = SemanticMatcher(store, config_enabled).match("Auntie Amma", CANDIDATES)

        assert verdict.member_id == "TAC90AMA"
        assert mock_client.post.call_count == 3

    @patch("tithebook.semantic.service.httpx.Client")
    def test_rate_limited_raises(
        self, mock_client_class: MagicMock, store: StateStore, config_enabled: SemanticConfig
    ) -> None:
        mock_client = MagicMock()
        mock_client.post.return_value = ollama_response({}, status_code=429)
        mock_client_class.return_value = mock_client

        matcher = SemanticMatcher(store, config_enabled)
        with pytest.raises(SemanticRateLimitedError):
            matcher.match("Auntie Amma", CANDIDATES)

        assert mock_client.post.call_count == 3
        assert matcher.active_requests == 0

    @patch("tithebook.semantic.service.httpx.Client")
    def test_unreachable_returns_none(
        self, mock_client_class: MagicMock, store: StateStore, config_enabled: SemanticConfig
    ) -> None:
        mock_client = MagicMock()
        mock_client.post.side_effect = httpx.ConnectError("refused")
        mock_client_class.return_value = mock_client

        assert SemanticMatcher(store, config_enabled).match("Auntie Amma", CANDIDATES) is None
        # Failures are not cached
        assert store.get_stats()["semantic_cache"] == 0

    @patch("tithebook.semantic.service.httpx.Client")
    def test_garbage_reply(
        self, mock_client_class: MagicMock, store: StateStore, config_enabled: SemanticConfig
    ) -> None:
        response = MagicMock()
        response.status_code = 200
        response.json.return_value = {"message": {"content": "no idea"}}
        mock_client = MagicMock()
        mock_client.post.return_value = response
        mock_client_class.return_value = mock_client

        assert SemanticMatcher(store, config_enabled).match("Auntie Amma", CANDIDATES) is None

    @pytest.mark.parametrize(
        "reply",
        [
            {"text": "<html>proxy error</html>"},
            {"json": ["not", "an", "object"]},
            {"json": {"message": "plain text"}},
        ],
    )
    @patch("tithebook.semantic.service.httpx.Client")
    def test_malformed_body(
        self,
        mock_client_class: MagicMock,
        reply: dict,
        store: StateStore,
        config_enabled: SemanticConfig,
    ) -> None:
        request = httpx.Request("POST", "http://localhost:11434/api/chat")
        mock_client = MagicMock()
        mock_client.post.return_value = httpx.Response(200, request=request, **reply)
        mock_client_class.return_value = mock_client

        matcher = SemanticMatcher(store, config_enabled)

        assert matcher.match("Auntie Amma", CANDIDATES) is None
        assert matcher.active_requests == 0
        assert store.get_stats()["semantic_cache"] == 0

    @patch("tithebook.semantic.service.httpx.Client")
    def test_works_without_store(
        self, mock_client_class: MagicMock, config_enabled: SemanticConfig
    ) -> None:
        mock_client = MagicMock()
        mock_client.post.return_value = ollama_response({"member_id": "TAC90AMA", "confidence": 0.9})
        mock_client_class.return_value = mock_client

        matcher = SemanticMatcher(None, config_enabled)
        matcher.match("Auntie Amma", CANDIDATES)
        matcher.match("Auntie Amma", CANDIDATES)

        assert mock_client.post.call_count == 2
        assert matcher.clear_cache() == 0

    @patch("tithebook.semantic.service.httpx.Client")
    def test_auth_header_forwarded(self, mock_client_class: MagicMock) -> None:
        config = SemanticConfig(enabled=True, auth_header="Bearer secret")
        SemanticMatcher(None, config)

        headers = mock_client_class.call_args.kwargs["headers"]
        assert headers == {"Authorization": "Bearer secret"}

    def test_is_remote(self):
        assert SemanticConfig(ollama_url="http://localhost:11434").is_remote() is False
        assert SemanticConfig(ollama_url="https://llm.example.org").is_remote() is True
