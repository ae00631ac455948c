"""Scout execution pipeline.

This module coordinates one run of a scout:

Pipeline Flow:
    1. SCRAPE: Fetch the scout URL as markdown with change tracking
    2. CHANGE CHECK: Map the change signal; unchanged pages stop here
    3. ANALYZE: Criteria analysis with the last 5 summaries as context
    4. DUPLICATE CHECK: Compare the summary embedding with recent runs
    5. PERSIST: Store interim analysis state on the execution
    6. EXTRACT: Pull information units (needs location or topic)
    7. NOTIFY: Email alert for matched, non-duplicate runs
    8. SCOUT BOOKKEEPING: last_run_at, reset failure counter
    9. FINALIZE: Mark the execution completed

Failure model:
    - Scrape failure fails the execution and bumps consecutive_failures;
      the result is returned with status=failed, not raised.
    - Extraction (6) and notification (7) degrade without failing the run.
    - Unexpected errors mark the execution failed and propagate.
"""

import logging
import time
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

from agents.analyzer import CriteriaAnalyzer
from agents.extractor import UnitExtractor
from collaborators import Collaborators
from config import Config
from database import Database
from errors import CollaboratorError, ConflictError, NotFoundError
from models.analysis import CriteriaAnalysis
from models.scout import ChangeStatus, ExecutionResult, ExecutionStatus, Scout
from notifications import build_alert_subject, build_scout_alert_email
from observability.logging import clear_context, set_run_context
from observability.tracing import trace_operation
from tools.scrape import ScrapeResult

logger = logging.getLogger(__name__)

NO_CHANGES_SUMMARY = {
    "de": "Keine Änderungen erkannt",
    "en": "No changes detected",
}


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class SweepStats:
    """Statistics from a run-due sweep over all scouts.

    Attributes:
        due: Scouts whose cadence had elapsed
        completed: Runs that finished (including unchanged pages)
        failed: Runs whose scrape failed
        skipped: Scouts skipped because a run was already in progress
        errors: Runs that raised unexpectedly
        units: Information units stored across all runs
        notified: Alert emails sent
        duration: Total sweep time in seconds
    """

    due: int = 0
    completed: int = 0
    failed: int = 0
    skipped: int = 0
    errors: int = 0
    units: int = 0
    notified: int = 0
    duration: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        d = asdict(self)
        d["duration"] = round(d["duration"], 2)
        return d


class ScoutPipeline:
    """Runs scouts through the nine-step execution pipeline.

    Collaborators are injected so one set of API clients serves every run
    in the process.

    Example:
        >>> pipeline = ScoutPipeline(config, db, Collaborators.from_config(config))
        >>> result = await pipeline.execute(scout_id)
        >>> result.status, result.units_extracted
    """

    def __init__(self, config: Config, db: Database, collaborators: Collaborators):
        self.config = config
        self.db = db
        self.scraper = collaborators.scraper
        self.llm = collaborators.llm
        self.mailer = collaborators.mailer
        self.analyzer = CriteriaAnalyzer(collaborators.llm, config.language)
        self.extractor = UnitExtractor(
            collaborators.llm,
            db,
            language=config.language,
            dedup_threshold=config.unit_dedup_threshold,
        )

    def _start_execution(self, scout: Scout, execution_id: str | None) -> str:
        """Resolve or create the execution record for this run."""
        if execution_id:
            execution = self.db.get_execution(execution_id)
            if execution is None or execution.scout_id != scout.id:
                raise NotFoundError("Execution not found")
            if execution.status != ExecutionStatus.RUNNING:
                raise ConflictError("Execution already finished", code="EXECUTION_FINISHED")
            return execution.id

        since = _now() - timedelta(minutes=self.config.run_lock_minutes)
        if self.db.find_running_execution(scout.id, since):
            raise ConflictError("An execution is already running", code="EXECUTION_RUNNING")
        return self.db.create_execution(scout.id, scout.user_id).id

    async def execute(
        self,
        scout_id: str,
        execution_id: str | None = None,
        skip_notification: bool = False,
        extract_units: bool = True,
    ) -> ExecutionResult:
        """Execute one scout run.

        Args:
            scout_id: Scout to run
            execution_id: Existing execution to fill in (created if None)
            skip_notification: Never send the alert email
            extract_units: Allow unit extraction for matched runs

        Returns:
            ExecutionResult (status=failed when the scrape failed)

        Raises:
            NotFoundError: Unknown scout or execution
            ConflictError: Another run started within the lock window, or the
                given execution already completed or failed
        """
        start = time.monotonic()

        scout = self.db.get_scout(scout_id)
        if scout is None:
            raise NotFoundError("Scout not found")

        execution_id = self._start_execution(scout, execution_id)
        set_run_context(execution_id[:8])
        logger.info("Execution started | scout=%s name=%s", scout.id, scout.name)

        try:
            with trace_operation("scout_execution", {"scout_id": scout.id, "execution_id": execution_id}) as attrs:
                result = await self._run(scout, execution_id, start, skip_notification, extract_units)
                attrs.update(status=result.status.value, units=result.units_extracted)
                return result
        except Exception as e:
            logger.error("Execution error | type=%s error=%s", type(e).__name__, e, exc_info=True)
            self.db.update_execution(
                execution_id,
                status=ExecutionStatus.FAILED,
                completed_at=_now(),
                error_message=str(e) or type(e).__name__,
            )
            raise
        finally:
            clear_context()

    def _elapsed_ms(self, start: float) -> int:
        return int((time.monotonic() - start) * 1000)

    async def _run(
        self,
        scout: Scout,
        execution_id: str,
        start: float,
        skip_notification: bool,
        extract_units: bool,
    ) -> ExecutionResult:
        # Step 1: scrape
        with trace_operation("scout.scrape", {"url": scout.url}):
            try:
                scrape = await self.scraper.scrape(scout.url, f"scout-{scout.id}")
            except Exception as e:
                logger.warning("Scraper raised | scout=%s type=%s", scout.id, type(e).__name__, exc_info=True)
                scrape = ScrapeResult.failed(f"Scrape failed: {e or type(e).__name__}")
        scrape_duration_ms = self._elapsed_ms(start)

        if not scrape.success:
            error = scrape.error or "Unknown scraping error"
            logger.warning("Scrape failed | scout=%s error=%s", scout.id, error)
            self.db.update_execution(
                execution_id,
                status=ExecutionStatus.FAILED,
                completed_at=_now(),
                change_status=ChangeStatus.ERROR,
                error_message=error,
                scrape_duration_ms=scrape_duration_ms,
            )
            self.db.record_scout_failure(scout.id)
            return ExecutionResult(
                execution_id=execution_id,
                status=ExecutionStatus.FAILED,
                change_status=ChangeStatus.ERROR,
                duration_ms=self._elapsed_ms(start),
                error=error,
            )

        # Step 2: change check
        change_status = ChangeStatus.from_signal(scrape.change_signal)
        logger.debug("Change check | signal=%s status=%s", scrape.change_signal, change_status.value)

        if change_status == ChangeStatus.SAME:
            summary = NO_CHANGES_SUMMARY.get(self.config.language, NO_CHANGES_SUMMARY["de"])
            self.db.update_execution(
                execution_id,
                status=ExecutionStatus.COMPLETED,
                completed_at=_now(),
                change_status=ChangeStatus.SAME,
                summary_text=summary,
                scrape_duration_ms=scrape_duration_ms,
            )
            self.db.record_scout_success(scout.id)
            duration_ms = self._elapsed_ms(start)
            logger.info("Execution done (no changes) | duration=%dms", duration_ms)
            return ExecutionResult(
                execution_id=execution_id,
                status=ExecutionStatus.COMPLETED,
                change_status=ChangeStatus.SAME,
                duration_ms=duration_ms,
                summary=summary,
            )

        content = scrape.markdown or ""

        # Step 3: criteria analysis
        with trace_operation("scout.analyze"):
            recent = self.db.recent_summaries(scout.id, limit=5)
            analysis = await self.analyzer.analyze(content, scout.criteria, recent)
        logger.info("Criteria analyzed | matched=%s findings=%d", analysis.matches, len(analysis.key_findings))

        # Step 4: duplicate check
        is_duplicate, similarity, embedding = await self._check_duplicate(scout, analysis)

        # Step 5: persist interim state
        self.db.update_execution(
            execution_id,
            change_status=change_status,
            criteria_matched=analysis.matches,
            summary_text=analysis.summary,
            summary_embedding=embedding,
            is_duplicate=is_duplicate,
            duplicate_similarity=similarity,
            scrape_duration_ms=scrape_duration_ms,
        )

        # Step 6: unit extraction
        units_extracted = 0
        if extract_units and analysis.matches and (scout.location or scout.topic):
            with trace_operation("scout.extract"):
                try:
                    units_extracted = await self.extractor.extract(content, scout, execution_id)
                except Exception as e:
                    logger.warning("Unit extraction failed | error=%s", e, exc_info=True)
        else:
            logger.debug("Unit extraction skipped")

        # Step 7: notification
        notification_sent = False
        notification_error = None
        if analysis.matches and not is_duplicate and not skip_notification and scout.notification_email:
            with trace_operation("scout.notify"):
                notification_sent, notification_error = await self._notify(scout, analysis)

        # Step 8: scout bookkeeping
        self.db.record_scout_success(scout.id)

        # Step 9: finalize
        self.db.update_execution(
            execution_id,
            status=ExecutionStatus.COMPLETED,
            completed_at=_now(),
            notification_sent=notification_sent,
            notification_error=notification_error,
            units_extracted=units_extracted,
        )

        duration_ms = self._elapsed_ms(start)
        logger.info(
            "Execution done | change=%s matched=%s duplicate=%s units=%d notified=%s duration=%dms",
            change_status.value,
            analysis.matches,
            is_duplicate,
            units_extracted,
            notification_sent,
            duration_ms,
        )
        return ExecutionResult(
            execution_id=execution_id,
            status=ExecutionStatus.COMPLETED,
            change_status=change_status,
            criteria_matched=analysis.matches,
            is_duplicate=is_duplicate,
            notification_sent=notification_sent,
            units_extracted=units_extracted,
            duration_ms=duration_ms,
            summary=analysis.summary,
        )

    async def _check_duplicate(
        self,
        scout: Scout,
        analysis: CriteriaAnalysis,
    ) -> tuple[bool, float | None, list[float] | None]:
        """Embed the summary and compare it with the scout's recent runs.

        Only matched runs with a summary are checked. An embedding failure
        leaves the run marked as not duplicate.
        """
        if not (analysis.matches and analysis.summary):
            return False, None, None

        with trace_operation("scout.dedup"):
            try:
                embedding = await self.llm.embed(analysis.summary)
            except CollaboratorError as e:
                logger.warning("Summary embedding failed; skipping duplicate check | error=%s", e)
                return False, None, None

            is_duplicate, similarity = self.db.check_duplicate_execution(
                scout.id,
                embedding,
                threshold=self.config.duplicate_threshold,
                lookback_days=self.config.duplicate_lookback_days,
            )
        logger.info("Duplicate check | duplicate=%s similarity=%s", is_duplicate, similarity)
        return is_duplicate, similarity, embedding

    async def _notify(self, scout: Scout, analysis: CriteriaAnalysis) -> tuple[bool, str | None]:
        """Send the alert email; returns (sent, error)."""
        city = scout.location.city if scout.location else None
        html_body = build_scout_alert_email(
            scout_name=scout.name,
            summary=analysis.summary,
            key_findings=analysis.key_findings,
            source_url=scout.url,
            location_city=city,
            language=self.config.language,
        )
        result = await self.mailer.send_email(
            scout.notification_email,
            build_alert_subject(scout.name, city),
            html_body,
        )
        if not result.success:
            logger.warning("Notification failed | error=%s", result.error)
        return result.success, result.error

    async def run_due(self, now: datetime | None = None) -> SweepStats:
        """Execute every active scout whose cadence has elapsed, one at a time."""
        start = time.monotonic()
        stats = SweepStats()
        due = self.db.due_scouts(now or _now())
        stats.due = len(due)
        logger.info("Sweep started | due=%d", stats.due)

        for scout in due:
            try:
                result = await self.execute(scout.id)
            except ConflictError:
                logger.info("Sweep skipped running scout | scout=%s", scout.id)
                stats.skipped += 1
                continue
            except Exception as e:
                logger.error("Sweep run failed | scout=%s error=%s", scout.id, e, exc_info=True)
                stats.errors += 1
                continue

            if result.status == ExecutionStatus.FAILED:
                stats.failed += 1
            else:
                stats.completed += 1
            stats.units += result.units_extracted
            stats.notified += int(result.notification_sent)

        stats.duration = time.monotonic() - start
        logger.info(
            "Sweep done | due=%d completed=%d failed=%d skipped=%d errors=%d duration=%.1fs",
            stats.due,
            stats.completed,
            stats.failed,
            stats.skipped,
            stats.errors,
            stats.duration,
        )
        return stats
