"""SQLite persistence for project requests, consultants and match runs."""

from __future__ import annotations

import json
import logging
import sqlite3
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from datetime import date, datetime
from decimal import Decimal
from pathlib import Path

from candidate_match.schemas import (
    CandidateResult,
    Consultant,
    ConsultantCv,
    MatchRun,
    ProjectRequest,
    ProjectRequestSummary,
    ProjectRequirement,
)

log = logging.getLogger(__name__)

_SCHEMA = """
    CREATE TABLE IF NOT EXISTS project_requests (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        customer_name TEXT,
        title TEXT,
        summary TEXT,
        description TEXT,
        required_skills TEXT,   -- JSON array
        requirements TEXT,      -- JSON array of {name, details, priority}
        start_date TEXT,
        end_date TEXT,
        response_deadline TEXT,
        created_at TEXT
    );

    CREATE TABLE IF NOT EXISTS consultants (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id TEXT UNIQUE,
        name TEXT,
        skills TEXT,            -- JSON array
        active INTEGER DEFAULT 1,
        created_at TEXT
    );

    CREATE TABLE IF NOT EXISTS consultant_cvs (
        cv_id TEXT PRIMARY KEY,
        consultant_id INTEGER NOT NULL REFERENCES consultants(id) ON DELETE CASCADE,
        active INTEGER DEFAULT 1,
        content TEXT,           -- JSON: qualifications, projects, work, education
        artifact_ref TEXT,
        artifact_uploaded_at TEXT,
        updated_at TEXT
    );

    CREATE TABLE IF NOT EXISTS cv_scores (
        user_id TEXT PRIMARY KEY,
        score_percent INTEGER NOT NULL,
        updated_at TEXT
    );

    CREATE TABLE IF NOT EXISTS match_generations (
        project_request_id INTEGER PRIMARY KEY,
        last_generation INTEGER NOT NULL
    );

    CREATE TABLE IF NOT EXISTS match_runs (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        project_request_id INTEGER NOT NULL,
        generation INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    );

    CREATE INDEX IF NOT EXISTS idx_match_runs_request
        ON match_runs (project_request_id, created_at);

    CREATE TABLE IF NOT EXISTS match_candidate_results (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        match_run_id INTEGER NOT NULL REFERENCES match_runs(id) ON DELETE CASCADE,
        consultant_id INTEGER NOT NULL CHECK (consultant_id > 0),
        match_score TEXT NOT NULL CHECK (CAST(match_score AS REAL) BETWEEN 0 AND 1),
        explanation TEXT,
        created_at TEXT NOT NULL
    );

    CREATE INDEX IF NOT EXISTS idx_candidate_results_run
        ON match_candidate_results (match_run_id);
"""

_CV_CONTENT_FIELDS = ("key_qualifications", "project_experience", "work_experience", "education")


def _iso(value: date | datetime | None) -> str | None:
    return value.isoformat() if value else None


def _parse_date(value: str | None) -> date | None:
    return date.fromisoformat(value) if value else None


def _parse_datetime(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class Database:
    def __init__(self, db_path: Path | str = "candidate_match.db") -> None:
        self.db_path = str(db_path)
        self._init_tables()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=30, isolation_level=None)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run statements in one write transaction; roll back on any error."""
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        finally:
            conn.close()

    @contextmanager
    def _reading(self) -> Iterator[sqlite3.Connection]:
        conn = self._connect()
        try:
            yield conn
        finally:
            conn.close()

    def _init_tables(self) -> None:
        conn = self._connect()
        try:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.executescript(_SCHEMA)
        finally:
            conn.close()

    # -- Project requests -----------------------------------------------------

    def save_project_request(self, req: ProjectRequest) -> int:
        params = (
            req.customer_name, req.title, req.summary, req.description,
            json.dumps(req.required_skills),
            json.dumps([r.model_dump(mode="json") for r in req.requirements]),
            _iso(req.start_date), _iso(req.end_date), _iso(req.response_deadline),
            req.created_at.isoformat(),
        )
        with self.transaction() as conn:
            if req.id is None:
                cur = conn.execute(
                    """INSERT INTO project_requests
                       (customer_name, title, summary, description, required_skills,
                        requirements, start_date, end_date, response_deadline, created_at)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                    params,
                )
                req.id = cur.lastrowid
            else:
                conn.execute(
                    """INSERT OR REPLACE INTO project_requests
                       (id, customer_name, title, summary, description, required_skills,
                        requirements, start_date, end_date, response_deadline, created_at)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                    (req.id, *params),
                )
        return req.id

    def get_project_request(self, request_id: int) -> ProjectRequest | None:
        with self._reading() as conn:
            row = conn.execute(
                "SELECT * FROM project_requests WHERE id = ?", (request_id,)
            ).fetchone()
        if not row:
            return None
        return ProjectRequest(
            id=row["id"],
            customer_name=row["customer_name"] or "",
            title=row["title"] or "",
            summary=row["summary"] or "",
            description=row["description"] or "",
            required_skills=json.loads(row["required_skills"] or "[]"),
            requirements=[ProjectRequirement(**r) for r in json.loads(row["requirements"] or "[]")],
            start_date=_parse_date(row["start_date"]),
            end_date=_parse_date(row["end_date"]),
            response_deadline=_parse_date(row["response_deadline"]),
            created_at=_parse_datetime(row["created_at"]) or datetime.now(),
        )

    def list_project_requests(self) -> list[ProjectRequestSummary]:
        with self._reading() as conn:
            rows = conn.execute(
                "SELECT id, title, description, customer_name, created_at "
                "FROM project_requests ORDER BY created_at DESC, id DESC"
            ).fetchall()
        summaries = []
        for r in rows:
            title = r["title"] or r["description"] or "Untitled project"
            if len(title) > 50:
                title = title[:50] + "..."
            summaries.append(ProjectRequestSummary(
                id=r["id"], title=title, customer_name=r["customer_name"] or "",
                created_at=_parse_datetime(r["created_at"]) or datetime.now(),
            ))
        return summaries

    # -- Consultants ----------------------------------------------------------

    def save_consultant(self, consultant: Consultant) -> int:
        now = datetime.now().isoformat()
        values = (consultant.user_id or None, consultant.name, json.dumps(consultant.skills),
                  int(consultant.active), now)
        with self.transaction() as conn:
            if consultant.id is None and consultant.user_id:
                # Importing the same user again updates the existing row.
                conn.execute(
                    """INSERT INTO consultants (user_id, name, skills, active, created_at)
                       VALUES (?, ?, ?, ?, ?)
                       ON CONFLICT(user_id) DO UPDATE SET
                           name = excluded.name, skills = excluded.skills, active = excluded.active""",
                    values,
                )
                consultant.id = conn.execute(
                    "SELECT id FROM consultants WHERE user_id = ?", (consultant.user_id,)
                ).fetchone()["id"]
            elif consultant.id is None:
                cur = conn.execute(
                    "INSERT INTO consultants (user_id, name, skills, active, created_at) VALUES (?, ?, ?, ?, ?)",
                    values,
                )
                consultant.id = cur.lastrowid
            else:
                conn.execute(
                    """INSERT INTO consultants (id, user_id, name, skills, active, created_at)
                       VALUES (?, ?, ?, ?, ?, ?)
                       ON CONFLICT(id) DO UPDATE SET
                           user_id = excluded.user_id, name = excluded.name,
                           skills = excluded.skills, active = excluded.active""",
                    (consultant.id, *values),
                )
            for cv in consultant.cvs:
                content = json.dumps(cv.model_dump(mode="json", include=set(_CV_CONTENT_FIELDS)))
                # Re-saving a CV keeps its cached artifact unless the caller supplies one.
                conn.execute(
                    """INSERT INTO consultant_cvs
                       (cv_id, consultant_id, active, content, artifact_ref, artifact_uploaded_at, updated_at)
                       VALUES (?, ?, ?, ?, ?, ?, ?)
                       ON CONFLICT(cv_id) DO UPDATE SET
                           consultant_id = excluded.consultant_id,
                           active = excluded.active,
                           content = excluded.content,
                           artifact_ref = COALESCE(excluded.artifact_ref, consultant_cvs.artifact_ref),
                           artifact_uploaded_at = COALESCE(excluded.artifact_uploaded_at,
                                                           consultant_cvs.artifact_uploaded_at),
                           updated_at = excluded.updated_at""",
                    (cv.cv_id, consultant.id, int(cv.active), content, cv.artifact_ref,
                     _iso(cv.artifact_uploaded_at), now),
                )
        return consultant.id

    def get_consultants_by_ids(self, consultant_ids: Iterable[int]) -> list[Consultant]:
        ids = list(dict.fromkeys(consultant_ids))
        if not ids:
            return []
        placeholders = ", ".join("?" for _ in ids)
        with self._reading() as conn:
            rows = conn.execute(
                f"SELECT * FROM consultants WHERE id IN ({placeholders})", ids
            ).fetchall()
            return self._hydrate(conn, rows)

    def find_consultants_by_skills(self, skills: Iterable[str], limit: int = 50) -> list[Consultant]:
        """Active consultants with an active CV, most matching skills first."""
        wanted = sorted({s.strip().upper() for s in skills if s and s.strip()})
        if not wanted:
            return self.list_active_consultants(limit)
        placeholders = ", ".join("?" for _ in wanted)
        with self._reading() as conn:
            rows = conn.execute(
                f"""SELECT c.*, COUNT(DISTINCT UPPER(TRIM(s.value))) AS hits
                    FROM consultants c, json_each(c.skills) s
                    WHERE c.active = 1
                      AND EXISTS (SELECT 1 FROM consultant_cvs cv
                                  WHERE cv.consultant_id = c.id AND cv.active = 1)
                      AND UPPER(TRIM(s.value)) IN ({placeholders})
                    GROUP BY c.id
                    ORDER BY hits DESC, c.id
                    LIMIT ?""",
                (*wanted, limit),
            ).fetchall()
            return self._hydrate(conn, rows)

    def list_active_consultants(self, limit: int = 30) -> list[Consultant]:
        with self._reading() as conn:
            rows = conn.execute(
                """SELECT c.* FROM consultants c
                   WHERE c.active = 1
                     AND EXISTS (SELECT 1 FROM consultant_cvs cv
                                 WHERE cv.consultant_id = c.id AND cv.active = 1)
                   ORDER BY c.id
                   LIMIT ?""",
                (limit,),
            ).fetchall()
            return self._hydrate(conn, rows)

    def known_skill_names(self) -> set[str]:
        with self._reading() as conn:
            rows = conn.execute(
                """SELECT DISTINCT UPPER(TRIM(s.value)) AS name
                   FROM consultants c, json_each(c.skills) s
                   WHERE TRIM(s.value) <> ''"""
            ).fetchall()
        return {r["name"] for r in rows if r["name"]}

    def _hydrate(self, conn: sqlite3.Connection, rows: list[sqlite3.Row]) -> list[Consultant]:
        consultants = []
        for r in rows:
            cv_rows = conn.execute(
                "SELECT * FROM consultant_cvs WHERE consultant_id = ? ORDER BY active DESC, cv_id",
                (r["id"],),
            ).fetchall()
            consultants.append(Consultant(
                id=r["id"],
                user_id=r["user_id"] or "",
                name=r["name"] or "",
                skills=json.loads(r["skills"] or "[]"),
                active=bool(r["active"]),
                cvs=[self._row_to_cv(cv) for cv in cv_rows],
            ))
        return consultants

    def _row_to_cv(self, row: sqlite3.Row) -> ConsultantCv:
        content = json.loads(row["content"] or "{}")
        return ConsultantCv(
            cv_id=row["cv_id"],
            active=bool(row["active"]),
            artifact_ref=row["artifact_ref"],
            artifact_uploaded_at=_parse_datetime(row["artifact_uploaded_at"]),
            **{k: content.get(k, []) for k in _CV_CONTENT_FIELDS},
        )

    # -- CV quality -----------------------------------------------------------

    def save_cv_score(self, user_id: str, score_percent: int) -> None:
        with self.transaction() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO cv_scores (user_id, score_percent, updated_at) VALUES (?, ?, ?)",
                (user_id, int(score_percent), datetime.now().isoformat()),
            )

    def get_cv_quality_scores(self, user_ids: Iterable[str]) -> dict[str, int]:
        ids = [u for u in dict.fromkeys(user_ids) if u]
        if not ids:
            return {}
        placeholders = ", ".join("?" for _ in ids)
        with self._reading() as conn:
            rows = conn.execute(
                f"SELECT user_id, score_percent FROM cv_scores WHERE user_id IN ({placeholders})", ids
            ).fetchall()
        return {r["user_id"]: r["score_percent"] for r in rows}

    # -- Artifact references --------------------------------------------------

    def get_artifact_ref(self, cv_id: str) -> tuple[str | None, datetime | None]:
        with self._reading() as conn:
            row = conn.execute(
                "SELECT artifact_ref, artifact_uploaded_at FROM consultant_cvs WHERE cv_id = ?", (cv_id,)
            ).fetchone()
        if not row:
            return None, None
        return row["artifact_ref"], _parse_datetime(row["artifact_uploaded_at"])

    def store_artifact_ref(self, cv_id: str, ref: str, uploaded_at: datetime,
                           stale_before: datetime | None = None) -> str | None:
        """Store *ref* unless a live reference is already present.

        Returns the reference that ended up stored (the caller's or an earlier
        writer's), or None when the CV record does not exist.
        """
        with self.transaction() as conn:
            conn.execute(
                """UPDATE consultant_cvs
                   SET artifact_ref = ?, artifact_uploaded_at = ?
                   WHERE cv_id = ?
                     AND (artifact_ref IS NULL OR TRIM(artifact_ref) = ''
                          OR artifact_uploaded_at IS NULL
                          OR (? IS NOT NULL AND artifact_uploaded_at < ?))""",
                (ref, uploaded_at.isoformat(), cv_id, _iso(stale_before), _iso(stale_before)),
            )
            row = conn.execute(
                "SELECT artifact_ref FROM consultant_cvs WHERE cv_id = ?", (cv_id,)
            ).fetchone()
        return row["artifact_ref"] if row else None

    def clear_artifact_ref(self, cv_id: str) -> bool:
        with self.transaction() as conn:
            cur = conn.execute(
                "UPDATE consultant_cvs SET artifact_ref = NULL, artifact_uploaded_at = NULL WHERE cv_id = ?",
                (cv_id,),
            )
        return cur.rowcount > 0

    # -- Match runs -----------------------------------------------------------

    def next_generation(self, project_request_id: int) -> int:
        with self.transaction() as conn:
            conn.execute(
                """INSERT INTO match_generations (project_request_id, last_generation) VALUES (?, 1)
                   ON CONFLICT(project_request_id) DO UPDATE SET last_generation = last_generation + 1""",
                (project_request_id,),
            )
            row = conn.execute(
                "SELECT last_generation FROM match_generations WHERE project_request_id = ?",
                (project_request_id,),
            ).fetchone()
        return row["last_generation"]

    def get_latest_match_run(self, project_request_id: int) -> MatchRun | None:
        with self._reading() as conn:
            row = conn.execute(
                """SELECT * FROM match_runs WHERE project_request_id = ?
                   ORDER BY created_at DESC, id DESC LIMIT 1""",
                (project_request_id,),
            ).fetchone()
            if not row:
                return None
            return self._load_run(conn, row)

    def replace_match_run(
        self,
        project_request_id: int,
        generation: int,
        results: list[CandidateResult],
        delete_existing: bool = False,
    ) -> MatchRun | None:
        """Persist a run and its results as one aggregate.

        Returns None without writing anything when a run with a newer
        generation has already been committed for the project request.
        """
        now = datetime.now()
        with self.transaction() as conn:
            newest = conn.execute(
                "SELECT MAX(generation) AS g FROM match_runs WHERE project_request_id = ?",
                (project_request_id,),
            ).fetchone()["g"]
            if newest is not None and newest > generation:
                log.info(
                    "Discarding stale run generation %d for project %d (generation %d already stored)",
                    generation, project_request_id, newest,
                )
                return None

            if delete_existing:
                cur = conn.execute(
                    "DELETE FROM match_runs WHERE project_request_id = ?", (project_request_id,)
                )
                log.info("Deleted %d existing match runs for project %d", cur.rowcount, project_request_id)

            cur = conn.execute(
                """INSERT INTO match_runs (project_request_id, generation, created_at, updated_at)
                   VALUES (?, ?, ?, ?)""",
                (project_request_id, generation, now.isoformat(), now.isoformat()),
            )
            run_id = cur.lastrowid
            for result in results:
                cur = conn.execute(
                    """INSERT INTO match_candidate_results
                       (match_run_id, consultant_id, match_score, explanation, created_at)
                       VALUES (?, ?, ?, ?, ?)""",
                    (run_id, result.consultant_id, str(result.match_score),
                     result.explanation, result.created_at.isoformat()),
                )
                result.id = cur.lastrowid

        return MatchRun(
            id=run_id, project_request_id=project_request_id, generation=generation,
            created_at=now, updated_at=now, candidates=list(results),
        )

    def _load_run(self, conn: sqlite3.Connection, row: sqlite3.Row) -> MatchRun:
        result_rows = conn.execute(
            "SELECT * FROM match_candidate_results WHERE match_run_id = ? ORDER BY id", (row["id"],)
        ).fetchall()
        return MatchRun(
            id=row["id"],
            project_request_id=row["project_request_id"],
            generation=row["generation"],
            created_at=_parse_datetime(row["created_at"]),
            updated_at=_parse_datetime(row["updated_at"]),
            candidates=[
                CandidateResult(
                    id=r["id"],
                    consultant_id=r["consultant_id"],
                    match_score=Decimal(r["match_score"]),
                    explanation=r["explanation"],
                    created_at=_parse_datetime(r["created_at"]),
                )
                for r in result_rows
            ],
        )
