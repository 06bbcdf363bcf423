"""Thin httpx client for the Gemini Files API and generateContent."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import Any

import httpx

from candidate_match.config import Config

log = logging.getLogger(__name__)

MARKDOWN_MIME = "text/markdown"

GENERATION_CONFIG = {
    "temperature": 0.2,
    "topP": 0.9,
    "topK": 40,
    "maxOutputTokens": 2048,
    "responseMimeType": "application/json",
}


class GeminiError(RuntimeError):
    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ProviderOverloaded(GeminiError):
    """The model is temporarily out of capacity; another model may succeed."""


def _is_overloaded(resp: httpx.Response) -> bool:
    if resp.status_code == 503:
        return True
    try:
        error = resp.json().get("error", {})
    except (ValueError, AttributeError):
        return "overloaded" in resp.text.lower()
    if not isinstance(error, dict):
        return False
    status = str(error.get("status", "")).upper()
    message = str(error.get("message", "")).lower()
    return status == "UNAVAILABLE" or "overloaded" in message


def _raise_for_status(resp: httpx.Response, what: str) -> None:
    if resp.is_success:
        return
    detail = resp.text[:500]
    if _is_overloaded(resp):
        raise ProviderOverloaded(f"{what} failed: model overloaded ({resp.status_code}): {detail}", resp.status_code)
    raise GeminiError(f"{what} failed with HTTP {resp.status_code}: {detail}", resp.status_code)


class GeminiFilesClient:
    """Uploads Markdown documents and runs generateContent over them.

    Every call runs under an overall deadline: uploads get
    ``config.upload_timeout_seconds`` for both protocol steps together and
    generation gets ``config.ranking_timeout_seconds``. The body is streamed
    so a slow trickle of bytes cannot outlive the deadline. Transport
    failures and overruns are raised as :class:`GeminiError`.
    """

    def __init__(
        self,
        config: Config,
        transport: httpx.BaseTransport | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config
        self._http = httpx.Client(transport=transport, follow_redirects=True)
        self._clock = clock

    def _require_key(self) -> str:
        if not self.config.gemini_api_key:
            raise GeminiError("GEMINI_API_KEY is not configured")
        return self.config.gemini_api_key

    def _post(self, url: str, deadline: float, **kwargs: Any) -> httpx.Response:
        """POST and read the whole response before *deadline* (a clock value)."""
        remaining = deadline - self._clock()
        if remaining <= 0:
            raise GeminiError(f"POST {url} not started: overall timeout reached")
        with self._http.stream("POST", url, timeout=httpx.Timeout(remaining), **kwargs) as resp:
            body = bytearray()
            for chunk in resp.iter_bytes():
                body.extend(chunk)
                if self._clock() > deadline:
                    raise GeminiError(f"POST {url} exceeded the overall timeout")
        # iter_bytes already decoded the body
        headers = [
            (k, v) for k, v in resp.headers.multi_items()
            if k.lower() not in ("content-encoding", "content-length")
        ]
        return httpx.Response(resp.status_code, headers=headers, content=bytes(body), request=resp.request)

    def upload_markdown(self, display_name: str, content: str) -> str:
        """Upload *content* with the resumable protocol and return its file URI."""
        key = self._require_key()
        data = content.encode("utf-8")
        deadline = self._clock() + self.config.upload_timeout_seconds
        try:
            start = self._post(
                f"{self.config.gemini_base_url}/upload/v1beta/files",
                deadline,
                params={"key": key},
                headers={
                    "X-Goog-Upload-Protocol": "resumable",
                    "X-Goog-Upload-Command": "start",
                    "X-Goog-Upload-Header-Content-Length": str(len(data)),
                    "X-Goog-Upload-Header-Content-Type": MARKDOWN_MIME,
                },
                json={"file": {"display_name": display_name}},
            )
            _raise_for_status(start, "Upload start")
            upload_url = start.headers.get("X-Goog-Upload-URL")
            if not upload_url:
                raise GeminiError("Upload start response did not include X-Goog-Upload-URL")

            finish = self._post(
                upload_url,
                deadline,
                headers={
                    "X-Goog-Upload-Offset": "0",
                    "X-Goog-Upload-Command": "upload, finalize",
                },
                content=data,
            )
            _raise_for_status(finish, "Upload finalize")
        except httpx.HTTPError as e:
            raise GeminiError(f"Upload of {display_name} failed: {e}") from e

        try:
            uri = finish.json()["file"]["uri"]
        except (ValueError, KeyError, TypeError) as e:
            raise GeminiError("Upload response did not include file.uri") from e
        if not uri or not str(uri).strip():
            raise GeminiError("Upload response contained a blank file.uri")
        log.debug("Uploaded %s (%d bytes) as %s", display_name, len(data), uri)
        return str(uri)

    def generate_content(self, model: str, parts: list[dict[str, Any]]) -> str:
        """Run one generateContent call and return the first candidate's text."""
        key = self._require_key()
        body = {
            "contents": [{"role": "user", "parts": parts}],
            "generationConfig": GENERATION_CONFIG,
        }
        deadline = self._clock() + self.config.ranking_timeout_seconds
        try:
            resp = self._post(
                f"{self.config.gemini_base_url}/v1beta/models/{model}:generateContent",
                deadline,
                params={"key": key},
                json=body,
            )
        except httpx.HTTPError as e:
            raise GeminiError(f"generateContent on {model} failed: {e}") from e
        _raise_for_status(resp, f"generateContent on {model}")

        try:
            return resp.json()["candidates"][0]["content"]["parts"][0]["text"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise GeminiError(f"generateContent on {model} returned no text") from e

    def close(self) -> None:
        self._http.close()
