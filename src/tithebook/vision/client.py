"""
Vision extraction client.

Sends one register photo to an Ollama-compatible vision model and parses
the returned rows into a PageExtraction.
"""

from __future__ import annotations

import base64
import json
import logging
from pathlib import Path
from typing import TYPE_CHECKING, Any

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from ..schemas.extraction import PageExtraction
from .prompts import build_extraction_prompt, parse_json_response

if TYPE_CHECKING:
    from ..config import VisionConfig

logger = logging.getLogger(__name__)

RETRY_STATUSES = [429, 500, 502, 503, 504]


class VisionError(Exception):
    """Base exception for vision extraction errors."""

    user_message = "This page could not be read."


class VisionAPIError(VisionError):
    """The vision service returned an error response."""

    def __init__(self, status_code: int, message: str, response_body: str | None = None):
        self.status_code = status_code
        self.message = message
        self.response_body = response_body
        super().__init__(f"Vision API error {status_code}: {message}")


class VisionConnectionError(VisionError):
    """Failed to reach the vision service."""

    user_message = "Try again in a minute."


class VisionResponseError(VisionError):
    """The model answered with something that is not an extraction."""

    user_message = "This page needs another photo."


class InvalidPageError(VisionError):
    """The image is not a recognizable tithe register page."""

    user_message = "This page needs another photo."


class RateLimitedError(VisionError):
    """The service is still throttling after all retries."""

    user_message = "Try again in a minute."


def _auth_headers(auth_header: str | None) -> dict[str, str]:
    # "Bearer token" or "Custom-Header: value"
    if not auth_header:
        return {}
    if ":" in auth_header:
        key, value = auth_header.split(":", 1)
        return {key.strip(): value.strip()}
    return {"Authorization": auth_header}


class VisionClient:
    """
    Client for an Ollama-compatible vision model.

    Features:
    - One page per request, image sent as base64
    - Automatic retry with exponential backoff on throttling and 5xx
    - Distinct errors for invalid pages and exhausted rate limits
    """

    CHAT_ENDPOINT = "/api/chat"
    DEFAULT_TIMEOUT = 60

    def __init__(
        self,
        base_url: str,
        model: str,
        auth_header: str | None = None,
        timeout: int = DEFAULT_TIMEOUT,
        max_attempts: int = 3,
        backoff_factor: float = 1.0,
    ):
        """
        Initialize vision client.

        Args:
            base_url: Service URL (e.g., "http://localhost:11434")
            model: Vision model name
            auth_header: Optional auth header for proxied deployments
            timeout: Request timeout in seconds
            max_attempts: Total attempts per request, including the first
            backoff_factor: Exponential backoff factor between attempts
        """
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.timeout = timeout

        self.session = requests.Session()
        self.session.headers.update({"Accept": "application/json"})
        self.session.headers.update(_auth_headers(auth_header))

        # raise_on_status=False hands back the last response once retries run out
        retry_strategy = Retry(
            total=max(0, max_attempts - 1),
            backoff_factor=backoff_factor,
            status_forcelist=RETRY_STATUSES,
            allowed_methods=["POST"],
            raise_on_status=False,
        )
        adapter = HTTPAdapter(max_retries=retry_strategy)
        self.session.mount("http://", adapter)
        self.session.mount("https://", adapter)

    @classmethod
    def from_config(cls, config: VisionConfig) -> VisionClient:
        return cls(
            base_url=config.base_url,
            model=config.model,
            auth_header=config.auth_header,
            timeout=config.timeout_seconds,
            max_attempts=config.max_attempts,
            backoff_factor=config.backoff_factor,
        )

    def _request(self, payload: dict[str, Any]) -> dict[str, Any]:
        """POST to the chat endpoint with error handling."""
        url = f"{self.base_url}{self.CHAT_ENDPOINT}"

        try:
            response = self.session.post(url, json=payload, timeout=self.timeout)
        except requests.exceptions.ConnectionError as e:
            raise VisionConnectionError(f"Failed to connect to vision service at {self.base_url}: {e}")
        except requests.exceptions.Timeout as e:
            raise VisionConnectionError(f"Vision request timed out: {e}")
        except requests.exceptions.RequestException as e:
            raise VisionError(f"Vision request failed: {e}")

        if response.status_code == 429:
            logger.warning("Vision service still rate limited after retries")
            raise RateLimitedError("Vision service is rate limited")

        if not response.ok:
            raise VisionAPIError(
                status_code=response.status_code,
                message=response.reason or "",
                response_body=response.text,
            )

        try:
            return response.json()
        except ValueError as e:
            raise VisionResponseError(f"Vision service returned invalid JSON: {e}")

    def extract_page(
        self,
        image: bytes,
        month: str | None = None,
        week: str | None = None,
        source: str | None = None,
    ) -> PageExtraction:
        """
        Extract the rows of one register page.

        Args:
            image: Raw image bytes (JPEG/PNG)
            month: Optional target month column
            week: Optional target week column
            source: Label kept on the result (e.g., file name)

        Raises:
            InvalidPageError: The image is not a register page
            RateLimitedError: Throttled after all retries
            VisionError: Any other failure
        """
        payload = {
            "model": self.model,
            "messages": [
                {
                    "role": "user",
                    "content": build_extraction_prompt(month, week),
                    "images": [base64.b64encode(image).decode("ascii")],
                }
            ],
            "stream": False,
            "format": "json",
            "options": {"temperature": 0},
        }

        logger.debug("Extracting %s with %s", source or "image", self.model)
        data = self._request(payload)
        content = (data.get("message") or {}).get("content", "")

        try:
            parsed = parse_json_response(content)
        except json.JSONDecodeError as e:
            raise VisionResponseError(f"Could not parse extraction for {source or 'image'}: {e}")

        page = PageExtraction.from_api_response(parsed, source=source)
        if not page.is_valid_page:
            raise InvalidPageError(f"{source or 'Image'} is not a tithe register page")

        logger.info("Extracted %d rows from %s", len(page.entries), source or "image")
        return page

    def extract_file(self, path: Path, month: str | None = None, week: str | None = None) -> PageExtraction:
        return self.extract_page(path.read_bytes(), month=month, week=week, source=path.name)

    def close(self) -> None:
        self.session.close()

    def __enter__(self) -> VisionClient:
        return self

    def __exit__(self, *args) -> None:
        self.close()
