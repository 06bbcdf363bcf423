"""MatchingOrchestrator: runs the matching pipeline per project request."""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from concurrent.futures import wait as wait_futures
from decimal import Decimal

from candidate_match.artifacts import ArtifactCache
from candidate_match.config import Config
from candidate_match.database import Database
from candidate_match.documents import describe_project_request
from candidate_match.ranking import BatchRankingClient, UploadFailed
from candidate_match.schemas import (
    Artifact,
    CandidateResult,
    CandidateSnapshot,
    MatchCandidateView,
    MatchStatus,
    MatchStatusReport,
    MatchTop10,
    ProjectRequest,
    ProjectRequestSummary,
    RankedList,
    TriggerAck,
)
from candidate_match.scoring import CandidateScorer
from candidate_match.skills import SkillCatalog, SkillExtractor

log = logging.getLogger(__name__)


class ProjectRequestNotFound(LookupError):
    def __init__(self, project_request_id: int) -> None:
        super().__init__(f"Project request {project_request_id} not found")
        self.project_request_id = project_request_id


class MatchingOrchestrator:
    """Coordinates skill extraction, scoring, artifact upload and AI ranking.

    At most one computation per project request runs in the background at a
    time. A forced trigger that arrives while one is running is folded into a
    single forced rerun started as soon as the current one finishes.
    """

    max_tracked_errors = 256

    def __init__(
        self,
        db: Database,
        extractor: SkillExtractor,
        scorer: CandidateScorer,
        artifacts: ArtifactCache,
        ranker: BatchRankingClient,
        *,
        batch_size: int = 10,
        skill_pool_limit: int = 50,
        default_pool_size: int = 30,
        top_n: int = 10,
        max_workers: int = 4,
        executor: Executor | None = None,
    ) -> None:
        self.db = db
        self.extractor = extractor
        self.scorer = scorer
        self.artifacts = artifacts
        self.ranker = ranker
        self.batch_size = batch_size
        self.skill_pool_limit = skill_pool_limit
        self.default_pool_size = default_pool_size
        self.top_n = top_n
        self._executor = executor or ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="matching")
        self._lock = threading.Lock()
        self._in_flight: dict[int, Future] = {}
        self._rerun: set[int] = set()
        self._last_error: dict[int, str] = {}
        self._closed = False

    # ------------------------------------------------------------------
    # Synchronous pipeline
    # ------------------------------------------------------------------

    def compute_and_persist(self, project_request_id: int, force_recompute: bool = False) -> list[CandidateResult]:
        """Compute and store matches, or return the stored ones.

        Raises ProjectRequestNotFound for an unknown id. Database errors
        propagate; upload and ranking failures only reduce the result.
        """
        request = self.db.get_project_request(project_request_id)
        if request is None:
            raise ProjectRequestNotFound(project_request_id)

        if not force_recompute:
            existing = self.db.get_latest_match_run(project_request_id)
            if existing is not None:
                log.info(
                    "Project %d already has match run %d; reusing %d candidates",
                    project_request_id, existing.id, existing.total_matches,
                )
                return existing.top_candidates(existing.total_matches)

        generation = self.db.next_generation(project_request_id)
        started = time.monotonic()
        log.info("Matching project %d (generation %d, force=%s)", project_request_id, generation, force_recompute)

        required = self._required_skills(request)
        pool = self._candidate_pool(required)
        if not pool:
            log.info("No candidates available for project %d", project_request_id)
            return []

        selected = self.scorer.select(
            pool,
            required,
            min_candidates=min(self.batch_size, len(pool)),
            max_candidates=self.batch_size,
        )
        artifacts = self._resolve_artifacts(selected)

        if artifacts:
            ranked = self.ranker.rank(
                str(project_request_id), describe_project_request(request), artifacts, self.top_n
            )
        else:
            log.warning("No CV artifacts could be resolved for project %d; skipping ranking", project_request_id)
            ranked = RankedList(project_request_id=str(project_request_id))

        results = [
            CandidateResult(
                consultant_id=int(entry.consultant_id),
                match_score=Decimal(entry.score) / Decimal(100),
                explanation="\n".join(entry.reasons),
            )
            for entry in ranked.ranked
        ]

        run = self.db.replace_match_run(project_request_id, generation, results, delete_existing=force_recompute)
        if run is None:
            latest = self.db.get_latest_match_run(project_request_id)
            return latest.top_candidates(latest.total_matches) if latest else []

        log.info(
            "Stored match run %d for project %d with %d candidates in %.1fs",
            run.id, project_request_id, run.total_matches, time.monotonic() - started,
        )
        return run.top_candidates(run.total_matches)

    def _required_skills(self, request: ProjectRequest) -> set[str]:
        explicit = {s.strip().upper() for s in request.required_skills if s and s.strip()}
        extracted = self.extractor.extract(request)
        return explicit | extracted

    def _candidate_pool(self, required: set[str]) -> list[CandidateSnapshot]:
        if required:
            consultants = self.db.find_consultants_by_skills(required, self.skill_pool_limit)
        else:
            consultants = self.db.list_active_consultants(self.default_pool_size)
        log.info("Candidate pool: %d consultants (%d required skills)", len(consultants), len(required))
        return [CandidateSnapshot.from_consultant(c) for c in consultants]

    def _resolve_artifacts(self, selected: list[CandidateSnapshot]) -> list[Artifact]:
        artifacts = []
        for snapshot in selected:
            try:
                ref = self.artifacts.resolve(snapshot)
            except UploadFailed as e:
                log.warning("Excluding consultant %d from this run: %s", snapshot.consultant_id, e)
                continue
            except Exception:
                log.exception("Excluding consultant %d from this run: artifact resolution failed",
                              snapshot.consultant_id)
                continue
            artifacts.append(Artifact(consultant_id=snapshot.consultant_id, file_uri=ref))
        return artifacts

    # ------------------------------------------------------------------
    # Background trigger
    # ------------------------------------------------------------------

    def trigger_async(self, project_request_id: int, force_recompute: bool = False) -> TriggerAck:
        """Start matching in the background and return immediately."""
        with self._lock:
            if self._closed:
                return TriggerAck(
                    project_request_id=project_request_id, accepted=False,
                    status=MatchStatus.PENDING, message="Matching service is shutting down",
                )
            running = self._in_flight.get(project_request_id)
            if running is not None:
                if force_recompute:
                    self._rerun.add(project_request_id)
                    message = "Matching in progress; recompute queued"
                else:
                    message = "Matching already in progress"
                return TriggerAck(project_request_id=project_request_id, status=MatchStatus.RUNNING, message=message)

            self._in_flight[project_request_id] = self._executor.submit(
                self._run_in_background, project_request_id, force_recompute
            )
        log.info("Triggered matching for project %d (force=%s)", project_request_id, force_recompute)
        return TriggerAck(project_request_id=project_request_id, status=MatchStatus.RUNNING, message="Matching started")

    def _run_in_background(self, project_request_id: int, force_recompute: bool) -> None:
        while True:
            try:
                self.compute_and_persist(project_request_id, force_recompute)
            except Exception as e:
                log.exception("Background matching failed for project %d", project_request_id)
                with self._lock:
                    self._record_error(project_request_id, str(e) or type(e).__name__)
            else:
                with self._lock:
                    self._last_error.pop(project_request_id, None)

            with self._lock:
                if project_request_id in self._rerun:
                    self._rerun.discard(project_request_id)
                    force_recompute = True
                    continue
                self._in_flight.pop(project_request_id, None)
                return

    def _record_error(self, project_request_id: int, message: str) -> None:
        # caller holds self._lock; oldest entries go first
        self._last_error.pop(project_request_id, None)
        self._last_error[project_request_id] = message
        while len(self._last_error) > self.max_tracked_errors:
            del self._last_error[next(iter(self._last_error))]

    def on_project_request_uploaded(self, project_request_id: int) -> TriggerAck:
        return self.trigger_async(project_request_id, force_recompute=False)

    def wait(self, project_request_id: int, timeout: float | None = None) -> bool:
        """Block until background work for the request finishes; False on timeout."""
        with self._lock:
            future = self._in_flight.get(project_request_id)
        if future is None:
            return True
        done, _ = wait_futures([future], timeout=timeout)
        return bool(done)

    def shutdown(self, wait: bool = True) -> None:
        with self._lock:
            self._closed = True
        self._executor.shutdown(wait=wait)
        self.ranker.close()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_matches_for_project(self, project_request_id: int, limit: int = 10) -> MatchTop10 | None:
        run = self.db.get_latest_match_run(project_request_id)
        if run is None:
            return None

        request = self.db.get_project_request(project_request_id)
        top = run.top_candidates(limit)
        consultants = {c.id: c for c in self.db.get_consultants_by_ids(r.consultant_id for r in top)}

        views = []
        for result in top:
            consultant = consultants.get(result.consultant_id)
            if consultant is None:
                log.warning(
                    "Consultant %d in match run %d no longer exists; skipping", result.consultant_id, run.id
                )
                continue
            cv = consultant.active_cv
            views.append(MatchCandidateView(
                consultant_id=result.consultant_id,
                consultant_name=consultant.name,
                user_id=consultant.user_id,
                cv_id=cv.cv_id if cv else None,
                match_score=result.match_score,
                explanation=result.explanation,
                reasons=result.reasons,
                created_at=result.created_at,
            ))

        return MatchTop10(
            project_request_id=project_request_id,
            project_title=request.display_title if request else "",
            total_matches=run.total_matches,
            matches=views,
            last_updated=run.updated_at,
        )

    def get_status(self, project_request_id: int) -> MatchStatusReport:
        with self._lock:
            running = project_request_id in self._in_flight
            error = self._last_error.get(project_request_id)
        if running:
            return MatchStatusReport(project_request_id=project_request_id, status=MatchStatus.RUNNING)

        run = self.db.get_latest_match_run(project_request_id)
        if run is not None:
            return MatchStatusReport(
                project_request_id=project_request_id, status=MatchStatus.COMPLETED,
                last_updated=run.updated_at, error=error,
            )
        if error:
            return MatchStatusReport(project_request_id=project_request_id, status=MatchStatus.FAILED, error=error)
        return MatchStatusReport(project_request_id=project_request_id, status=MatchStatus.PENDING)

    def list_project_requests(self) -> list[ProjectRequestSummary]:
        return self.db.list_project_requests()

    def forget_artifact(self, consultant_id: int) -> bool:
        """Drop the cached CV upload for a consultant so the next run re-uploads it."""
        consultants = self.db.get_consultants_by_ids([consultant_id])
        if not consultants:
            return False
        return self.artifacts.invalidate(CandidateSnapshot.from_consultant(consultants[0]))


def create_orchestrator(config: Config) -> MatchingOrchestrator:
    """Wire the pipeline from configuration."""
    db = Database(config.db_path)
    catalog = SkillCatalog(db.known_skill_names)
    ranker = BatchRankingClient(config)
    return MatchingOrchestrator(
        db,
        SkillExtractor(catalog),
        CandidateScorer(db.get_cv_quality_scores),
        ArtifactCache(db, ranker, ttl_hours=config.artifact_ttl_hours),
        ranker,
        batch_size=config.batch_size,
        skill_pool_limit=config.skill_pool_limit,
        default_pool_size=config.default_pool_size,
        top_n=config.top_n,
        max_workers=config.max_workers,
    )
