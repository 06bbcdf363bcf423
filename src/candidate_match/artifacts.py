"""Cache of uploaded CV artifacts, stored on the CV record."""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Callable
from datetime import datetime, timedelta

from candidate_match.database import Database
from candidate_match.documents import render_cv_markdown
from candidate_match.ranking import BatchRankingClient
from candidate_match.schemas import CandidateSnapshot

log = logging.getLogger(__name__)


class ArtifactCache:
    """Resolve a candidate's current CV to an uploaded file reference.

    A cached reference older than *ttl_hours* is treated as missing because
    the provider deletes uploaded files after a while. Concurrent resolvers
    of the same CV may both upload, but only the first stored reference is
    kept and every caller gets that one back.
    """

    def __init__(
        self,
        db: Database,
        uploader: BatchRankingClient,
        ttl_hours: float = 47.0,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.db = db
        self.uploader = uploader
        self.ttl = timedelta(hours=ttl_hours)
        self._clock = clock

    def _lookup(self, cv_id: str, now: datetime) -> str | None:
        ref, uploaded_at = self.db.get_artifact_ref(cv_id)
        if not ref or not ref.strip():
            return None
        if uploaded_at is not None and uploaded_at < now - self.ttl:
            log.debug("Artifact for CV %s expired (uploaded %s)", cv_id, uploaded_at.isoformat())
            return None
        return ref

    def resolve(self, snapshot: CandidateSnapshot) -> str:
        """Return a file reference for *snapshot*, uploading on a cache miss.

        Raises ``UploadFailed`` if the upload fails.
        """
        now = self._clock()
        cv = snapshot.cv
        if cv is not None:
            cached = self._lookup(cv.cv_id, now)
            if cached:
                log.debug("Artifact cache hit for consultant %d (CV %s)", snapshot.consultant_id, cv.cv_id)
                return cached

        display_name = f"consultant-{snapshot.consultant_id}"
        if cv is not None:
            display_name += f"-cv-{cv.cv_id}"
        ref = self.uploader.upload(snapshot.consultant_id, f"{display_name}.md", render_cv_markdown(snapshot))

        if cv is None:
            log.info("Consultant %d has no CV record; artifact %s not cached", snapshot.consultant_id, ref)
            return ref

        try:
            stored = self.db.store_artifact_ref(cv.cv_id, ref, now, stale_before=now - self.ttl)
        except sqlite3.Error as e:
            log.warning("Could not cache artifact %s for CV %s: %s", ref, cv.cv_id, e)
            return ref
        if stored and stored != ref:
            log.info("Consultant %d: another upload won the race, using %s", snapshot.consultant_id, stored)
            return stored
        log.info("Uploaded CV %s for consultant %d as %s", cv.cv_id, snapshot.consultant_id, ref)
        return ref

    def invalidate(self, snapshot: CandidateSnapshot) -> bool:
        if snapshot.cv is None:
            return False
        cleared = self.db.clear_artifact_ref(snapshot.cv.cv_id)
        if cleared:
            log.info("Cleared cached artifact for consultant %d (CV %s)", snapshot.consultant_id, snapshot.cv.cv_id)
        return cleared
