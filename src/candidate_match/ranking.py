"""Batch ranking of candidate CVs with one AI call per matching run."""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable
from typing import Any

from pydantic import ValidationError

from candidate_match.config import Config
from candidate_match.gemini import MARKDOWN_MIME, GeminiError, GeminiFilesClient, ProviderOverloaded
from candidate_match.prompts import RANKING_AGENT
from candidate_match.schemas import Artifact, RankedCandidate, RankedList

log = logging.getLogger(__name__)


class UploadFailed(RuntimeError):
    def __init__(self, consultant_id: int, message: str) -> None:
        super().__init__(f"Upload for consultant {consultant_id} failed: {message}")
        self.consultant_id = consultant_id


class RankingParseError(ValueError):
    pass


def strip_code_fences(raw: str) -> str:
    text = raw.strip()
    if text.startswith("```"):
        text = text.split("\n", 1)[1] if "\n" in text else text[3:]
        if text.rstrip().endswith("```"):
            text = text.rstrip()[:-3]
        text = text.strip()
    return text


def parse_ranked_response(
    raw: str,
    project_request_id: str,
    allowed_ids: set[str] | None = None,
    top_n: int = 10,
) -> RankedList:
    """Decode the model output into a :class:`RankedList`.

    Entries are validated one by one. Malformed entries, ids that were not
    part of the batch and repeated ids are dropped; the rest keep the
    model's order and are cut to *top_n*.
    """
    text = strip_code_fences(raw)
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise RankingParseError(f"Ranking response is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise RankingParseError("Ranking response is not a JSON object")
    entries = data.get("ranked")
    if not isinstance(entries, list):
        raise RankingParseError("Ranking response has no 'ranked' array")

    ranked: list[RankedCandidate] = []
    seen: set[str] = set()
    for entry in entries:
        try:
            candidate = RankedCandidate.model_validate(entry)
        except ValidationError as e:
            log.warning("Dropping malformed ranking entry %r: %s", entry, e.errors()[0].get("msg"))
            continue
        cid = candidate.consultant_id.strip()
        if allowed_ids is not None and cid not in allowed_ids:
            log.warning("Dropping ranking entry for unknown consultant %s", cid)
            continue
        if cid in seen:
            continue
        seen.add(cid)
        ranked.append(candidate.model_copy(update={"consultant_id": cid}))

    return RankedList(
        project_request_id=str(data.get("projectRequestId") or project_request_id),
        ranked=ranked[:max(top_n, 0)],
    )


class BatchRankingClient:
    """Uploads CV artifacts and ranks a batch of them against a project.

    The strong model is tried first. If it reports overload the client waits
    ``fallback_backoff_seconds`` and tries the fast model exactly once. Every
    other failure yields an empty ranking.
    """

    def __init__(
        self,
        config: Config,
        files_client: GeminiFilesClient | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config = config
        self.files = files_client or GeminiFilesClient(config)
        self._sleep = sleep

    def upload(self, consultant_id: int, display_name: str, markdown: str) -> str:
        try:
            return self.files.upload_markdown(display_name, markdown)
        except GeminiError as e:
            raise UploadFailed(consultant_id, str(e)) from e

    def _build_parts(self, project_request_id: str, project_description: str,
                     artifacts: list[Artifact], top_n: int) -> list[dict[str, Any]]:
        prompt = RANKING_AGENT.format(
            top_n=top_n,
            project_request_id=project_request_id,
            project_description=project_description,
        )
        parts: list[dict[str, Any]] = [{"text": prompt}]
        for artifact in artifacts:
            parts.append({"text": f"consultantId={artifact.consultant_id}"})
            parts.append({"file_data": {"mime_type": MARKDOWN_MIME, "file_uri": artifact.file_uri}})
        return parts

    def _attempt(self, model: str, parts: list[dict[str, Any]], project_request_id: str,
                 allowed: set[str], top_n: int) -> RankedList:
        started = time.monotonic()
        raw = self.files.generate_content(model, parts)
        result = parse_ranked_response(raw, project_request_id, allowed, top_n)
        log.info(
            "Model %s ranked %d candidates for project %s in %.1fs",
            model, len(result.ranked), project_request_id, time.monotonic() - started,
        )
        return result

    def rank(
        self,
        project_request_id: str,
        project_description: str,
        artifacts: list[Artifact],
        top_n: int = 10,
    ) -> RankedList:
        project_request_id = str(project_request_id)
        empty = RankedList(project_request_id=project_request_id)
        if not artifacts:
            return empty

        parts = self._build_parts(project_request_id, project_description, artifacts, top_n)
        allowed = {str(a.consultant_id) for a in artifacts}
        strong, fast = self.config.matching_model, self.config.flash_model
        log.info("Ranking %d candidates for project %s with %s", len(artifacts), project_request_id, strong)

        try:
            return self._attempt(strong, parts, project_request_id, allowed, top_n)
        except ProviderOverloaded as e:
            log.warning("Model %s overloaded (%s); retrying once with %s", strong, e.status_code, fast)
        except (GeminiError, RankingParseError) as e:
            log.error("Ranking with %s failed for project %s: %s", strong, project_request_id, e)
            return empty
        except Exception:
            log.exception("Unexpected ranking failure for project %s", project_request_id)
            return empty

        self._sleep(self.config.fallback_backoff_seconds)
        try:
            return self._attempt(fast, parts, project_request_id, allowed, top_n)
        except (GeminiError, RankingParseError) as e:
            log.error("Fallback ranking with %s failed for project %s: %s", fast, project_request_id, e)
        except Exception:
            log.exception("Unexpected fallback ranking failure for project %s", project_request_id)
        return empty

    def close(self) -> None:
        self.files.close()
