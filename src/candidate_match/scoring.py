"""Deterministic pre-ranking of the candidate pool before the AI batch call."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass

from candidate_match.schemas import CandidateSnapshot

log = logging.getLogger(__name__)

SKILL_WEIGHT = 0.5
CV_QUALITY_WEIGHT = 0.5
MIN_SCORE_THRESHOLD = 0.2
NEUTRAL_SKILL_SCORE = 0.5
DEFAULT_CV_SCORE = 0.5
MATCH_BONUS = 0.05

QualityLookup = Callable[[list[str]], dict[str, int]]


@dataclass
class ScoredCandidate:
    candidate: CandidateSnapshot
    skill_score: float
    quality_score: float
    combined_score: float


def _clamp(value: float) -> float:
    return min(max(value, 0.0), 1.0)


class CandidateScorer:
    """Combine skill overlap and CV quality into one relevance score.

    *quality_lookup* receives the user ids of the whole pool in one call and
    returns a 0-100 quality score per id. Missing ids are unscored.
    """

    def __init__(self, quality_lookup: QualityLookup | None = None) -> None:
        self.quality_lookup = quality_lookup

    def skill_match_score(self, candidate_skills: Iterable[str], required_skills: Iterable[str]) -> float:
        required = {s.strip().upper() for s in required_skills if s and s.strip()}
        if not required:
            return NEUTRAL_SKILL_SCORE
        have = {s.strip().upper() for s in candidate_skills if s and s.strip()}
        if not have:
            return 0.0
        matches = len(have & required)
        coverage = matches / len(required)
        return _clamp(coverage * (1 + MATCH_BONUS * matches))

    def _lookup_quality(self, pool: list[CandidateSnapshot]) -> dict[str, int]:
        if self.quality_lookup is None:
            return {}
        user_ids = [c.user_id for c in pool if c.user_id]
        if not user_ids:
            return {}
        try:
            return dict(self.quality_lookup(user_ids))
        except Exception:
            log.warning("CV quality lookup failed for %d candidates; using defaults", len(user_ids), exc_info=True)
            return {}

    def score(self, pool: list[CandidateSnapshot], required_skills: Iterable[str]) -> list[ScoredCandidate]:
        """Score every candidate, highest combined score first (stable)."""
        required = list(required_skills)
        quality = self._lookup_quality(pool)

        scored = []
        for candidate in pool:
            raw = quality.get(candidate.user_id)
            if raw is None:
                raw = candidate.cv_quality
            quality_score = _clamp(raw / 100.0) if raw is not None else DEFAULT_CV_SCORE
            skill_score = self.skill_match_score(candidate.skills, required)
            combined = SKILL_WEIGHT * skill_score + CV_QUALITY_WEIGHT * quality_score
            scored.append(ScoredCandidate(candidate, skill_score, quality_score, combined))

        scored.sort(key=lambda s: s.combined_score, reverse=True)
        return scored

    def select(
        self,
        pool: list[CandidateSnapshot],
        required_skills: Iterable[str],
        min_candidates: int = 5,
        max_candidates: int = 15,
    ) -> list[CandidateSnapshot]:
        if not pool:
            return []

        scored = self.score(pool, required_skills)
        above = [s for s in scored if s.combined_score >= MIN_SCORE_THRESHOLD]
        if len(above) >= min_candidates:
            chosen = above[:max_candidates]
        else:
            if above and len(above) < len(scored):
                log.info(
                    "Only %d of %d candidates above threshold %.2f; widening to full ranking",
                    len(above), len(scored), MIN_SCORE_THRESHOLD,
                )
            chosen = scored[:max_candidates]

        self._log_summary(scored, chosen)
        return [s.candidate for s in chosen]

    def _log_summary(self, scored: list[ScoredCandidate], chosen: list[ScoredCandidate]) -> None:
        if not chosen:
            return
        avg = sum(s.combined_score for s in chosen) / len(chosen)
        log.info(
            "Selected %d of %d candidates (top %.3f, bottom %.3f, avg %.3f)",
            len(chosen), len(scored), chosen[0].combined_score, chosen[-1].combined_score, avg,
        )
        for s in chosen[:3]:
            log.debug(
                "  %s (id=%d): combined=%.3f skill=%.3f quality=%.3f",
                s.candidate.name, s.candidate.consultant_id, s.combined_score, s.skill_score, s.quality_score,
            )
