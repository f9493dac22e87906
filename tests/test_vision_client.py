"""
Tests for the vision extraction client.

These tests use responses library to mock HTTP requests,
validating client behavior without calling a real model.
"""

import base64
import json

import pytest
import responses

from tithebook.config import VisionConfig
from tithebook.vision import (
    InvalidPageError,
    RateLimitedError,
    VisionAPIError,
    VisionClient,
    VisionConnectionError,
    VisionResponseError,
)
from tithebook.vision.prompts import build_extraction_prompt, parse_json_response

BASE_URL = "http://vision.test:11434"
CHAT_URL = f"{BASE_URL}/api/chat"

PAGE_JSON = {
    "isValidPage": True,
    "detectedYear": 2024,
    "pageNumber": 1,
    "entries": [
        {"rowNo": 1, "name": "Kofi Mensah", "amount": "1OO", "confidence": 0.8},
        {"rowNo": 2, "name": "Ama Owusu", "amount": "-", "legibility": 5},
    ],
}


def chat_reply(content) -> dict:
    if not isinstance(content, str):
        content = json.dumps(content)
    return {"model": "qwen2.5vl:7b", "message": {"role": "assistant", "content": content}}


@pytest.fixture
def client() -> VisionClient:
    return VisionClient(BASE_URL, "qwen2.5vl:7b", max_attempts=3, backoff_factor=0)


class TestVisionClient:
    """Test vision extraction over the Ollama chat API."""

    @responses.activate
    def test_extract_page(self, client):
        """A register page is parsed into entries."""
        responses.add(responses.POST, CHAT_URL, json=chat_reply(PAGE_JSON), status=200)

        page = client.extract_page(b"image-bytes", source="page1.jpg")

        assert page.is_valid_page is True
        assert page.detected_year == 2024
        assert page.source == "page1.jpg"
        assert [e.row_no for e in page.entries] == [1, 2]
        assert page.entries[0].amount == 100
        assert page.entries[0].confidence == 0.8
        # No confidence from the model: scored from the cell itself
        assert page.entries[1].amount == 0
        assert page.entries[1].confidence == 0.95

    @responses.activate
    def test_request_payload(self, client):
        responses.add(responses.POST, CHAT_URL, json=chat_reply(PAGE_JSON), status=200)

        client.extract_page(b"abc", month="June", week="Week 2")

        body = json.loads(responses.calls[0].request.body)
        assert body["model"] == "qwen2.5vl:7b"
        assert body["stream"] is False
        assert body["format"] == "json"
        assert body["options"] == {"temperature": 0}
        message = body["messages"][0]
        assert message["images"] == [base64.b64encode(b"abc").decode("ascii")]
        assert "month JUNE and week column Week 2" in message["content"]

    @responses.activate
    def test_auth_header(self):
        responses.add(responses.POST, CHAT_URL, json=chat_reply(PAGE_JSON), status=200)
        client = VisionClient(BASE_URL, "m", auth_header="X-Api-Key: secret", backoff_factor=0)

        client.extract_page(b"abc")

        assert responses.calls[0].request.headers["X-Api-Key"] == "secret"

    @responses.activate
    def test_invalid_page(self, client):
        responses.add(
            responses.POST,
            CHAT_URL,
            json=chat_reply({"isValidPage": False, "entries": []}),
            status=200,
        )

        with pytest.raises(InvalidPageError) as exc_info:
            client.extract_page(b"selfie")

        assert exc_info.value.user_message == "This page needs another photo."

    @responses.activate
    def test_fenced_json_reply(self, client):
        content = "Here you go:\n```json\n" + json.dumps(PAGE_JSON) + "\n```"
        responses.add(responses.POST, CHAT_URL, json=chat_reply(content), status=200)

        page = client.extract_page(b"abc")

        assert len(page.entries) == 2

    @responses.activate
    def test_unparseable_reply(self, client):
        responses.add(responses.POST, CHAT_URL, json=chat_reply("I cannot read this"), status=200)

        with pytest.raises(VisionResponseError):
            client.extract_page(b"abc")

    @responses.activate
    def test_non_json_body(self, client):
        responses.add(responses.POST, CHAT_URL, body="<html>proxy</html>", status=200)

        with pytest.raises(VisionResponseError):
            client.extract_page(b"abc")

    @responses.activate
    def test_rate_limited_after_retries(self, client):
        for _ in range(3):
            responses.add(responses.POST, CHAT_URL, json={"error": "busy"}, status=429)

        with pytest.raises(RateLimitedError) as exc_info:
            client.extract_page(b"abc")

        assert exc_info.value.user_message == "Try again in a minute."

    @responses.activate
    def test_retries_server_errors(self, client):
        responses.add(responses.POST, CHAT_URL, json={"error": "loading"}, status=503)
        responses.add(responses.POST, CHAT_URL, json=chat_reply(PAGE_JSON), status=200)

        page = client.extract_page(b"abc")

        assert len(page.entries) == 2

    @responses.activate
    def test_client_error(self):
        responses.add(responses.POST, CHAT_URL, json={"error": "model not found"}, status=404)
        client = VisionClient(BASE_URL, "missing", max_attempts=1)

        with pytest.raises(VisionAPIError) as exc_info:
            client.extract_page(b"abc")

        assert exc_info.value.status_code == 404
        assert "model not found" in exc_info.value.response_body

    def test_connection_error(self):
        client = VisionClient("http://127.0.0.1:9", "m", timeout=1, max_attempts=1)

        with pytest.raises(VisionConnectionError):
            client.extract_page(b"abc")

    @responses.activate
    def test_extract_file(self, client, tmp_path):
        responses.add(responses.POST, CHAT_URL, json=chat_reply(PAGE_JSON), status=200)
        image = tmp_path / "page3.jpg"
        image.write_bytes(b"\xff\xd8jpeg")

        page = client.extract_file(image)

        assert page.source == "page3.jpg"

    def test_from_config(self):
        config = VisionConfig(base_url=f"{BASE_URL}/", model="llava", timeout_seconds=45)
        with VisionClient.from_config(config) as client:
            assert client.base_url == BASE_URL
            assert client.model == "llava"
            assert client.timeout == 45


class TestPrompts:
    """Tests for prompt building and reply parsing."""

    def test_prompt_without_target(self):
        prompt = build_extraction_prompt()
        assert "TITHES REGISTER" in prompt
        assert "week column" not in prompt

    def test_parse_trailing_commas(self):
        assert parse_json_response('{"entries": [1, 2,],}') == {"entries": [1, 2]}

    def test_parse_rejects_empty(self):
        with pytest.raises(json.JSONDecodeError):
            parse_json_response("")
