"""Tests for the Gemini client and batch ranking."""

from __future__ import annotations

import json

import httpx
import pytest

from candidate_match.config import Config
from candidate_match.gemini import GeminiError, GeminiFilesClient
from candidate_match.ranking import (
    BatchRankingClient,
    RankingParseError,
    UploadFailed,
    parse_ranked_response,
    strip_code_fences,
)
from candidate_match.schemas import Artifact

BASE = "https://gemini.test"


def _config(**overrides) -> Config:
    values = dict(gemini_api_key="test-key", gemini_base_url=BASE, fallback_backoff_seconds=1.5)
    values.update(overrides)
    return Config(**values)


def _text_response(text: str) -> httpx.Response:
    return httpx.Response(200, json={"candidates": [{"content": {"parts": [{"text": text}]}}]})


def _ranking_json(*entries) -> str:
    return json.dumps({"projectRequestId": "7", "ranked": list(entries)})


class Recorder:
    """Mock transport handler that replays queued responses per model."""

    def __init__(self, responses):
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    @property
    def models(self) -> list[str]:
        return [r.url.path.split("/models/")[1].split(":")[0] for r in self.requests]


def _client(handler, sleeps=None, **overrides) -> BatchRankingClient:
    config = _config(**overrides)
    files = GeminiFilesClient(config, transport=httpx.MockTransport(handler))
    sleep = sleeps.append if sleeps is not None else (lambda s: None)
    return BatchRankingClient(config, files_client=files, sleep=sleep)


ARTIFACTS = [Artifact(consultant_id=1, file_uri="files/one"), Artifact(consultant_id=2, file_uri="files/two")]


# ---------------------------------------------------------------------------
# Response parsing
# ---------------------------------------------------------------------------

@pytest.mark.parametrize("raw", [
    '{"a": 1}',
    '```json\n{"a": 1}\n```',
    '```\n{"a": 1}\n```\n',
    '  ```json\n{"a": 1}```  ',
])
def test_strip_code_fences(raw):
    assert json.loads(strip_code_fences(raw)) == {"a": 1}


def test_parse_drops_malformed_unknown_and_duplicate_entries():
    raw = _ranking_json(
        {"consultantId": "2", "score": 150, "reasons": ["Kotlin expert"]},
        {"consultantId": "1", "score": "81", "reasons": ["Spring Boot"]},
        {"consultantId": "3", "score": 99, "reasons": []},
        {"consultantId": "2", "score": 10, "reasons": []},
        {"score": 50},
        {"consultantId": "1", "score": "high"},
        "not an object",
    )
    result = parse_ranked_response(raw, "7", allowed_ids={"1", "2"}, top_n=10)
    assert [(c.consultant_id, c.score) for c in result.ranked] == [("2", 100), ("1", 81)]
    assert result.project_request_id == "7"


def test_parse_truncates_to_top_n():
    raw = _ranking_json(*[{"consultantId": str(i), "score": 90 - i} for i in range(1, 6)])
    assert len(parse_ranked_response(raw, "7", top_n=3).ranked) == 3


def test_parse_accepts_numeric_ids():
    raw = _ranking_json({"consultantId": 2, "score": 70, "reasons": ["Solid"]})
    assert parse_ranked_response(raw, "7", allowed_ids={"2"}).ranked[0].consultant_id == "2"


@pytest.mark.parametrize("raw", ["not json", "[]", '{"projectRequestId": "7"}', '{"ranked": {}}'])
def test_parse_failure(raw):
    with pytest.raises(RankingParseError):
        parse_ranked_response(raw, "7")


# ---------------------------------------------------------------------------
# Upload protocol
# ---------------------------------------------------------------------------

def test_upload_uses_resumable_protocol():
    markdown = "# Alice\n\n## Skills\n- **Kotlin**\n"
    recorder = Recorder([
        httpx.Response(200, headers={"X-Goog-Upload-URL": "https://upload.test/session/1"}),
        httpx.Response(200, json={"file": {"uri": "https://gemini.test/v1beta/files/abc"}}),
    ])
    client = _client(recorder)

    assert client.upload(1, "consultant-1.md", markdown) == "https://gemini.test/v1beta/files/abc"

    start, finish = recorder.requests
    assert start.url.path == "/upload/v1beta/files"
    assert start.url.params["key"] == "test-key"
    assert start.headers["X-Goog-Upload-Protocol"] == "resumable"
    assert start.headers["X-Goog-Upload-Command"] == "start"
    assert start.headers["X-Goog-Upload-Header-Content-Length"] == str(len(markdown.encode()))
    assert start.headers["X-Goog-Upload-Header-Content-Type"] == "text/markdown"
    assert json.loads(start.content) == {"file": {"display_name": "consultant-1.md"}}

    assert str(finish.url) == "https://upload.test/session/1"
    assert finish.headers["X-Goog-Upload-Command"] == "upload, finalize"
    assert finish.headers["X-Goog-Upload-Offset"] == "0"
    assert finish.content == markdown.encode()


def test_upload_missing_upload_url_fails():
    client = _client(Recorder([httpx.Response(200)]))
    with pytest.raises(UploadFailed):
        client.upload(1, "consultant-1.md", "# Alice")


def test_upload_http_error_fails():
    client = _client(Recorder([httpx.Response(500, text="boom")]))
    with pytest.raises(UploadFailed) as exc:
        client.upload(4, "consultant-4.md", "# Dan")
    assert exc.value.consultant_id == 4


def test_upload_timeout_fails():
    client = _client(Recorder([httpx.ConnectTimeout("timed out")]))
    with pytest.raises(UploadFailed):
        client.upload(1, "consultant-1.md", "# Alice")


def test_upload_without_api_key_fails_before_network():
    recorder = Recorder([])
    client = _client(recorder, gemini_api_key="")
    with pytest.raises(UploadFailed):
        client.upload(1, "consultant-1.md", "# Alice")
    assert recorder.requests == []


# ---------------------------------------------------------------------------
# Ranking
# ---------------------------------------------------------------------------

def test_rank_builds_single_request_with_file_references():
    body = _ranking_json({"consultantId": "2", "score": 91, "reasons": ["Led a Kotlin team"]})
    recorder = Recorder([_text_response(f"```json\n{body}\n```")])
    client = _client(recorder)

    result = client.rank("7", "Customer: Acme\nTitle: Kotlin developer", ARTIFACTS, top_n=10)

    assert [(c.consultant_id, c.score, c.reasons) for c in result.ranked] == [("2", 91, ["Led a Kotlin team"])]
    assert recorder.models == ["gemini-2.5-pro"]

    sent = json.loads(recorder.requests[0].content)
    parts = sent["contents"][0]["parts"]
    assert "Kotlin developer" in parts[0]["text"]
    assert "MUST" in parts[0]["text"]
    assert parts[1] == {"text": "consultantId=1"}
    assert parts[2] == {"file_data": {"mime_type": "text/markdown", "file_uri": "files/one"}}
    assert parts[3] == {"text": "consultantId=2"}
    assert parts[4]["file_data"]["file_uri"] == "files/two"
    assert sent["generationConfig"]["responseMimeType"] == "application/json"


def test_rank_without_artifacts_makes_no_call():
    recorder = Recorder([])
    assert _client(recorder).rank("7", "desc", [], 10).ranked == []
    assert recorder.requests == []


def test_overload_retries_once_with_fast_model():
    body = _ranking_json({"consultantId": "1", "score": 77, "reasons": ["Good fit"]})
    recorder = Recorder([
        httpx.Response(503, json={"error": {"code": 503, "status": "UNAVAILABLE", "message": "The model is overloaded."}}),
        _text_response(body),
    ])
    sleeps = []

    result = _client(recorder, sleeps).rank("7", "desc", ARTIFACTS)

    assert [c.consultant_id for c in result.ranked] == ["1"]
    assert recorder.models == ["gemini-2.5-pro", "gemini-2.5-flash"]
    assert sleeps == [1.5]


def test_overload_detected_from_error_body():
    recorder = Recorder([
        httpx.Response(500, json={"error": {"status": "INTERNAL", "message": "Model is overloaded, try later"}}),
        _text_response(_ranking_json()),
    ])
    _client(recorder).rank("7", "desc", ARTIFACTS)
    assert len(recorder.requests) == 2


def test_fallback_failure_returns_empty_after_two_attempts():
    recorder = Recorder([
        httpx.Response(503, text="overloaded"),
        httpx.Response(503, text="overloaded"),
        _text_response(_ranking_json({"consultantId": "1", "score": 10})),
    ])
    result = _client(recorder).rank("7", "desc", ARTIFACTS)
    assert result.ranked == []
    assert len(recorder.requests) == 2


def test_fallback_parse_failure_returns_empty():
    recorder = Recorder([httpx.Response(503), _text_response("I cannot rank these candidates.")])
    assert _client(recorder).rank("7", "desc", ARTIFACTS).ranked == []
    assert len(recorder.requests) == 2


@pytest.mark.parametrize("failure", [
    httpx.Response(500, json={"error": {"status": "INTERNAL", "message": "Internal error"}}),
    httpx.Response(429, json={"error": {"status": "RESOURCE_EXHAUSTED", "message": "Quota exceeded"}}),
    httpx.Response(404, json={"error": {"status": "NOT_FOUND", "message": "File not found"}}),
    httpx.ReadTimeout("ranking took too long"),
    _text_response("not json at all"),
    httpx.Response(200, json={"candidates": []}),
])
def test_other_failures_return_empty_without_retry(failure):
    recorder = Recorder([failure, _text_response(_ranking_json({"consultantId": "1", "score": 10}))])
    sleeps = []
    result = _client(recorder, sleeps).rank("7", "desc", ARTIFACTS)
    assert result.ranked == []
    assert len(recorder.requests) == 1
    assert sleeps == []


def test_ranking_uses_configured_models():
    recorder = Recorder([httpx.Response(503), _text_response(_ranking_json())])
    _client(recorder, matching_model="strong-x", flash_model="fast-y").rank("7", "desc", ARTIFACTS)
    assert recorder.models == ["strong-x", "fast-y"]


# ---------------------------------------------------------------------------
# Overall deadline
# ---------------------------------------------------------------------------

def _clock_jumping_to(elapsed: float):
    """Reads 0.0 twice (deadline and first request), then *elapsed* forever."""
    ticks = iter([0.0, 0.0])
    return lambda: next(ticks, elapsed)


def _timed_files(recorder, elapsed: float, **overrides) -> GeminiFilesClient:
    config = _config(**overrides)
    return GeminiFilesClient(config, transport=httpx.MockTransport(recorder), clock=_clock_jumping_to(elapsed))


def test_generate_content_within_deadline_returns_text():
    recorder = Recorder([_text_response("ranked")])
    files = _timed_files(recorder, 299.0, ranking_timeout_seconds=300)
    assert files.generate_content("gemini-test", [{"text": "rank"}]) == "ranked"


def test_generate_content_past_overall_deadline_fails():
    recorder = Recorder([_text_response("ranked")])
    files = _timed_files(recorder, 301.0, ranking_timeout_seconds=300)
    with pytest.raises(GeminiError, match="overall timeout"):
        files.generate_content("gemini-test", [{"text": "rank"}])


def test_ranking_past_overall_deadline_returns_empty_without_retry():
    recorder = Recorder([
        _text_response(_ranking_json({"consultantId": "1", "score": 80})),
        _text_response(_ranking_json()),
    ])
    config = _config(ranking_timeout_seconds=300)
    files = GeminiFilesClient(config, transport=httpx.MockTransport(recorder), clock=_clock_jumping_to(301.0))
    sleeps = []

    result = BatchRankingClient(config, files_client=files, sleep=sleeps.append).rank("7", "desc", ARTIFACTS)

    assert result.ranked == []
    assert len(recorder.requests) == 1
    assert sleeps == []


def test_upload_deadline_covers_both_steps():
    recorder = Recorder([
        httpx.Response(200, headers={"X-Goog-Upload-URL": "https://upload.test/session/1"}),
        httpx.Response(200, json={"file": {"uri": "files/abc"}}),
    ])
    files = _timed_files(recorder, 61.0, upload_timeout_seconds=60)
    client = BatchRankingClient(files.config, files_client=files, sleep=lambda s: None)

    with pytest.raises(UploadFailed):
        client.upload(1, "consultant-1.md", "# Alice")
    assert len(recorder.requests) == 1
