"""Shared fixtures for Candidate Match tests."""

from __future__ import annotations

import tempfile
from pathlib import Path

import pytest

from candidate_match.database import Database
from candidate_match.schemas import Consultant, ConsultantCv, KeyQualification, ProjectExperience


@pytest.fixture
def db():
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Database(Path(tmpdir) / "test.db")


@pytest.fixture
def add_consultant(db: Database):
    """Persist a consultant with one active CV and return it."""

    def _add(name: str, skills: list[str], user_id: str | None = None,
             active: bool = True, with_cv: bool = True, cv_quality: int | None = None) -> Consultant:
        user_id = user_id or name.lower()
        cvs = []
        if with_cv:
            cvs.append(ConsultantCv(
                cv_id=f"cv-{user_id}",
                key_qualifications=[KeyQualification(label="Backend", description=f"{name} builds backends.")],
                project_experience=[ProjectExperience(
                    customer="Acme", roles=["Developer"], description="Payments platform", skills=skills,
                    from_year_month="2021-01", to_year_month="2023-06",
                )],
            ))
        consultant = Consultant(user_id=user_id, name=name, skills=skills, active=active, cvs=cvs)
        db.save_consultant(consultant)
        if cv_quality is not None:
            db.save_cv_score(user_id, cv_quality)
        return consultant

    return _add
