"""Data models for the matching pipeline."""

from __future__ import annotations

import math
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator

NO_EXPLANATION = "No explanation provided for this match"

SCORE_PLACES = Decimal("0.0001")


def clamp_score(value: Decimal | float | int | str) -> Decimal:
    """Clamp a match score into [0, 1] with four decimals."""
    try:
        score = Decimal(str(value))
    except InvalidOperation:
        return Decimal("0").quantize(SCORE_PLACES)
    if score.is_nan():
        score = Decimal("0")
    score = min(max(score, Decimal("0")), Decimal("1"))
    return score.quantize(SCORE_PLACES, rounding=ROUND_HALF_UP)


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class RequirementPriority(str, Enum):
    MUST = "MUST"
    SHOULD = "SHOULD"


class MatchStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


# ---------------------------------------------------------------------------
# Project requests
# ---------------------------------------------------------------------------

class ProjectRequirement(BaseModel):
    name: str = ""
    details: str = ""
    priority: RequirementPriority = RequirementPriority.MUST


class ProjectRequest(BaseModel):
    id: int | None = None
    customer_name: str = ""
    title: str = ""
    summary: str = ""
    description: str = ""
    required_skills: list[str] = Field(default_factory=list)
    requirements: list[ProjectRequirement] = Field(default_factory=list)
    start_date: date | None = None
    end_date: date | None = None
    response_deadline: date | None = None
    created_at: datetime = Field(default_factory=datetime.now)

    @property
    def display_title(self) -> str:
        text = self.title or self.description or "Untitled project"
        return text if len(text) <= 100 else text[:100] + "..."


class ProjectRequestSummary(BaseModel):
    id: int
    title: str
    customer_name: str
    created_at: datetime


# ---------------------------------------------------------------------------
# Consultants and CVs
# ---------------------------------------------------------------------------

class KeyQualification(BaseModel):
    label: str = ""
    description: str = ""


class ProjectExperience(BaseModel):
    customer: str = ""
    roles: list[str] = Field(default_factory=list)
    description: str = ""
    long_description: str = ""
    skills: list[str] = Field(default_factory=list)
    from_year_month: str = ""
    to_year_month: str = ""


class WorkExperience(BaseModel):
    employer: str = ""
    from_year_month: str = ""
    to_year_month: str = ""


class Education(BaseModel):
    degree: str = ""
    school: str = ""


class ConsultantCv(BaseModel):
    cv_id: str
    active: bool = True
    key_qualifications: list[KeyQualification] = Field(default_factory=list)
    project_experience: list[ProjectExperience] = Field(default_factory=list)
    work_experience: list[WorkExperience] = Field(default_factory=list)
    education: list[Education] = Field(default_factory=list)
    artifact_ref: str | None = None
    artifact_uploaded_at: datetime | None = None


class Consultant(BaseModel):
    id: int | None = None
    user_id: str = ""
    name: str = ""
    skills: list[str] = Field(default_factory=list)
    active: bool = True
    cvs: list[ConsultantCv] = Field(default_factory=list)

    @property
    def active_cv(self) -> ConsultantCv | None:
        for cv in self.cvs:
            if cv.active:
                return cv
        return self.cvs[0] if self.cvs else None


class CvScore(BaseModel):
    """Externally computed CV quality for one user, in percent."""

    user_id: str = Field(min_length=1)
    score: int = Field(ge=0, le=100)


class CandidateSnapshot(BaseModel):
    """Per-run projection of a consultant used while scoring and ranking."""

    consultant_id: int
    user_id: str = ""
    name: str = ""
    skills: list[str] = Field(default_factory=list)
    cv_quality: int | None = None  # 0-100
    cv: ConsultantCv | None = None

    @classmethod
    def from_consultant(cls, consultant: Consultant, cv_quality: int | None = None) -> CandidateSnapshot:
        if consultant.id is None:
            raise ValueError("consultant must be persisted before it can be matched")
        return cls(
            consultant_id=consultant.id,
            user_id=consultant.user_id,
            name=consultant.name,
            skills=list(consultant.skills),
            cv_quality=cv_quality,
            cv=consultant.active_cv,
        )


# ---------------------------------------------------------------------------
# AI ranking wire format
# ---------------------------------------------------------------------------

class RankedCandidate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    consultant_id: str = Field(alias="consultantId", min_length=1)
    score: int
    reasons: list[str] = Field(default_factory=list)

    @field_validator("consultant_id", mode="before")
    @classmethod
    def _id_as_text(cls, v):
        if isinstance(v, int) and not isinstance(v, bool):
            return str(v)
        return v

    @field_validator("score", mode="before")
    @classmethod
    def _clamp_score(cls, v):
        if isinstance(v, bool):
            raise ValueError("score must be a number")
        try:
            number = float(v)
        except (TypeError, ValueError):
            raise ValueError("score must be a number") from None
        if not math.isfinite(number):
            raise ValueError("score must be a number")
        return min(max(int(round(number)), 0), 100)

    @field_validator("reasons", mode="before")
    @classmethod
    def _reason_list(cls, v):
        if v is None:
            return []
        if isinstance(v, str):
            return [v] if v.strip() else []
        if not isinstance(v, (list, tuple)):
            raise ValueError("reasons must be a list of strings")
        return [str(r) for r in v if r is not None and str(r).strip()]


class RankedList(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    project_request_id: str = Field(alias="projectRequestId")
    ranked: list[RankedCandidate] = Field(default_factory=list)


class Artifact(BaseModel):
    """An uploaded CV reference for one candidate."""

    consultant_id: int
    file_uri: str


# ---------------------------------------------------------------------------
# Persisted match results
# ---------------------------------------------------------------------------

class CandidateResult(BaseModel):
    id: int | None = None
    consultant_id: int = Field(gt=0)
    match_score: Decimal
    explanation: str = NO_EXPLANATION
    created_at: datetime = Field(default_factory=datetime.now)

    @field_validator("match_score", mode="before")
    @classmethod
    def _clamp(cls, v):
        return clamp_score(v)

    @field_validator("explanation", mode="before")
    @classmethod
    def _default_explanation(cls, v):
        if v is None or not str(v).strip():
            return NO_EXPLANATION
        return v

    @property
    def reasons(self) -> list[str]:
        if self.explanation == NO_EXPLANATION:
            return []
        return [line.strip() for line in self.explanation.splitlines() if line.strip()]

    @property
    def score_percent(self) -> int:
        return int(self.match_score * 100)


class MatchRun(BaseModel):
    id: int | None = None
    project_request_id: int
    generation: int = 0
    created_at: datetime = Field(default_factory=datetime.now)
    updated_at: datetime = Field(default_factory=datetime.now)
    candidates: list[CandidateResult] = Field(default_factory=list)

    @property
    def total_matches(self) -> int:
        return len(self.candidates)

    def top_candidates(self, limit: int = 10) -> list[CandidateResult]:
        """Highest score first; newer results win ties."""
        ordered = sorted(self.candidates, key=lambda c: c.created_at, reverse=True)
        ordered = sorted(ordered, key=lambda c: c.match_score, reverse=True)
        return ordered[:max(limit, 0)]


# ---------------------------------------------------------------------------
# Read views
# ---------------------------------------------------------------------------

class MatchCandidateView(BaseModel):
    consultant_id: int
    consultant_name: str
    user_id: str = ""
    cv_id: str | None = None
    match_score: Decimal
    explanation: str = NO_EXPLANATION
    reasons: list[str] = Field(default_factory=list)
    created_at: datetime


class MatchTop10(BaseModel):
    project_request_id: int
    project_title: str = ""
    total_matches: int = 0
    matches: list[MatchCandidateView] = Field(default_factory=list)
    last_updated: datetime | None = None


class MatchStatusReport(BaseModel):
    project_request_id: int
    status: MatchStatus
    last_updated: datetime | None = None
    error: str | None = None


class TriggerAck(BaseModel):
    project_request_id: int
    accepted: bool = True
    status: MatchStatus = MatchStatus.RUNNING
    message: str = ""
