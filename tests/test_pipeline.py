"""Tests for the scout execution pipeline."""

from datetime import datetime, timedelta, timezone

import pytest

from errors import ConflictError, NotFoundError
from models.scout import ChangeStatus, ExecutionStatus, Frequency, Location
from notifications import EmailResult
from tools.scrape import ScrapeResult

from tests.conftest import analysis, extraction


def make_scout(db, **overrides):
    fields = {
        "user_id": "user-1",
        "name": "Gemeinderat Zürich",
        "url": "https://www.stadt-zuerich.ch/gemeinderat",
        "criteria": "Beschlüsse zum Schulhausbau",
        "location": Location(city="Zurich"),
        "notification_email": "redaktion@example.ch",
    }
    fields.update(overrides)
    if "name" in overrides and "url" not in overrides:
        fields["url"] = f"https://www.stadt-zuerich.ch/{overrides['name']}"
    return db.create_scout(**fields)


# =============================================================================
# Start conditions
# =============================================================================


class TestStart:
    async def test_unknown_scout(self, pipeline):
        with pytest.raises(NotFoundError):
            await pipeline.execute("missing")

    async def test_conflict_when_recent_run_in_progress(self, pipeline, db, scraper):
        scout = make_scout(db)
        db.create_execution(scout.id, scout.user_id)

        with pytest.raises(ConflictError) as exc_info:
            await pipeline.execute(scout.id)

        assert exc_info.value.code == "EXECUTION_RUNNING"
        assert scraper.calls == []

    async def test_stale_running_execution_does_not_block(self, pipeline, db, scraper):
        scout = make_scout(db)
        stale = datetime.now(timezone.utc) - timedelta(minutes=30)
        db.create_execution(scout.id, scout.user_id, now=stale)
        scraper.result = ScrapeResult(success=True, markdown="same", change_signal="same")

        result = await pipeline.execute(scout.id)

        assert result.status == ExecutionStatus.COMPLETED

    async def test_uses_given_execution(self, pipeline, db, scraper):
        scout = make_scout(db)
        execution = db.create_execution(scout.id, scout.user_id)
        scraper.result = ScrapeResult(success=True, markdown="same", change_signal="same")

        result = await pipeline.execute(scout.id, execution_id=execution.id)

        assert result.execution_id == execution.id
        assert db.get_execution(execution.id).status == ExecutionStatus.COMPLETED

    async def test_finished_execution_cannot_be_rerun(self, pipeline, db, scraper):
        scout = make_scout(db)
        scraper.result = ScrapeResult.failed("boom")
        first = await pipeline.execute(scout.id)
        scraper.result = ScrapeResult(success=True, markdown="x", change_signal="same")

        with pytest.raises(ConflictError) as exc_info:
            await pipeline.execute(scout.id, execution_id=first.execution_id)

        assert exc_info.value.code == "EXECUTION_FINISHED"
        execution = db.get_execution(first.execution_id)
        assert execution.status == ExecutionStatus.FAILED
        assert execution.change_status == ChangeStatus.ERROR
        assert execution.error_message == "boom"
        assert len(scraper.calls) == 1

    async def test_unknown_execution(self, pipeline, db):
        scout = make_scout(db)
        with pytest.raises(NotFoundError):
            await pipeline.execute(scout.id, execution_id="missing")


# =============================================================================
# Scrape and change check
# =============================================================================


class TestScrapeAndChange:
    async def test_scrape_failure_fails_execution(self, pipeline, db, scraper, llm):
        scout = make_scout(db)
        scraper.result = ScrapeResult.failed("Timeout after 60s")

        result = await pipeline.execute(scout.id)

        assert result.status == ExecutionStatus.FAILED
        assert result.change_status == ChangeStatus.ERROR
        assert result.error == "Timeout after 60s"
        execution = db.get_execution(result.execution_id)
        assert execution.status == ExecutionStatus.FAILED
        assert execution.change_status == ChangeStatus.ERROR
        assert execution.error_message == "Timeout after 60s"
        assert execution.completed_at is not None
        assert db.get_scout(scout.id).consecutive_failures == 1
        assert llm.chat_calls == []

    async def test_scraper_exception_is_a_scrape_failure(self, pipeline, db, scraper, llm, monkeypatch):
        scout = make_scout(db)

        async def broken(url, tag):
            raise ValueError("Expecting value: line 1 column 1")

        monkeypatch.setattr(scraper, "scrape", broken)

        result = await pipeline.execute(scout.id)

        assert result.status == ExecutionStatus.FAILED
        assert result.change_status == ChangeStatus.ERROR
        assert "Expecting value" in result.error
        execution = db.get_execution(result.execution_id)
        assert execution.status == ExecutionStatus.FAILED
        assert execution.change_status == ChangeStatus.ERROR
        assert db.get_scout(scout.id).consecutive_failures == 1
        assert llm.chat_calls == []

    async def test_failures_accumulate_and_reset(self, pipeline, db, scraper):
        scout = make_scout(db)
        scraper.result = ScrapeResult.failed("HTTP 500")
        await pipeline.execute(scout.id)
        await pipeline.execute(scout.id)
        assert db.get_scout(scout.id).consecutive_failures == 2

        scraper.result = ScrapeResult(success=True, markdown="x", change_signal="same")
        await pipeline.execute(scout.id)
        assert db.get_scout(scout.id).consecutive_failures == 0

    async def test_unchanged_page_short_circuits(self, pipeline, db, scraper, llm, mailer):
        scout = make_scout(db)
        scraper.result = ScrapeResult(success=True, markdown="unchanged", change_signal="same")

        result = await pipeline.execute(scout.id)

        assert result.status == ExecutionStatus.COMPLETED
        assert result.change_status == ChangeStatus.SAME
        assert result.summary == "Keine Änderungen erkannt"
        assert llm.chat_calls == []
        assert llm.embed_calls == []
        assert mailer.sent == []
        stored = db.get_scout(scout.id)
        assert stored.last_run_at is not None
        assert stored.consecutive_failures == 0

    async def test_scrape_tag_names_scout(self, pipeline, db, scraper):
        scout = make_scout(db)
        scraper.result = ScrapeResult(success=True, markdown="x", change_signal="same")
        await pipeline.execute(scout.id)
        assert scraper.calls == [(scout.url, f"scout-{scout.id}")]

    @pytest.mark.parametrize("signal,expected", [
        ("new", ChangeStatus.FIRST_RUN),
        ("changed", ChangeStatus.CHANGED),
        ("unknown", ChangeStatus.CHANGED),
    ])
    async def test_change_signal_mapping(self, pipeline, db, scraper, llm, signal, expected):
        scout = make_scout(db, notification_email=None)
        scraper.result = ScrapeResult(success=True, markdown="x", change_signal=signal)
        llm.queue(analysis(matches=False, summary="Nichts Relevantes"))

        result = await pipeline.execute(scout.id)

        assert result.change_status == expected
        assert db.get_execution(result.execution_id).change_status == expected


# =============================================================================
# Analysis, dedup, extraction, notification
# =============================================================================


class TestMatchedRun:
    async def test_example_scenario(self, pipeline, db, scraper, llm):
        scout = make_scout(db, criteria="", notification_email=None)
        scraper.result = ScrapeResult(success=True, markdown="# Stadt Zürich\n...", change_signal="new")
        llm.embeddings.update({
            "Stadtrat genehmigt Kredit.": [1.0, 0.0, 0.0],
            "Der Stadtrat hat den Kredit genehmigt.": [0.98, 0.02, 0.0],
            "Tram 4 fährt ab Mai häufiger.": [0.0, 1.0, 0.0],
            "X": [0.0, 0.0, 1.0],
        })
        llm.queue(
            analysis(matches=True, summary="X", findings=["Y"]),
            extraction(
                "Stadtrat genehmigt Kredit.",
                "Der Stadtrat hat den Kredit genehmigt.",
                "Tram 4 fährt ab Mai häufiger.",
            ),
        )

        result = await pipeline.execute(scout.id)

        assert result.status == ExecutionStatus.COMPLETED
        assert result.change_status == ChangeStatus.FIRST_RUN
        assert result.criteria_matched is True
        assert result.is_duplicate is False
        assert result.units_extracted == 2
        execution = db.get_execution(result.execution_id)
        assert execution.status == ExecutionStatus.COMPLETED
        assert execution.units_extracted == 2
        assert execution.summary_text == "X"
        assert execution.criteria_matched is True
        assert execution.scrape_duration_ms is not None

    async def test_notifies_on_match(self, pipeline, db, llm, mailer):
        scout = make_scout(db)
        llm.queue(analysis(summary="Schulhaus bewilligt", findings=["12 Mio."]), extraction("Eins."))

        result = await pipeline.execute(scout.id)

        assert result.notification_sent is True
        assert len(mailer.sent) == 1
        email = mailer.sent[0]
        assert email["to"] == "redaktion@example.ch"
        assert email["subject"] == "Scout-Alarm: Gemeinderat Zürich (Zurich)"
        assert "Schulhaus bewilligt" in email["html"]
        assert db.get_execution(result.execution_id).notification_sent is True

    async def test_notification_failure_is_recorded_not_fatal(self, pipeline, db, llm, mailer):
        scout = make_scout(db)
        mailer.result = EmailResult(success=False, error="Resend API error: 422")
        llm.queue(analysis(), extraction("Eins."))

        result = await pipeline.execute(scout.id)

        assert result.status == ExecutionStatus.COMPLETED
        assert result.notification_sent is False
        execution = db.get_execution(result.execution_id)
        assert execution.notification_error == "Resend API error: 422"

    async def test_skip_notification(self, pipeline, db, llm, mailer):
        scout = make_scout(db)
        llm.queue(analysis(), extraction("Eins."))

        result = await pipeline.execute(scout.id, skip_notification=True)

        assert result.notification_sent is False
        assert mailer.sent == []

    async def test_no_match_skips_dedup_extraction_and_email(self, pipeline, db, llm, mailer):
        scout = make_scout(db)
        llm.queue(analysis(matches=False, summary="Nur Wetterbericht"))

        result = await pipeline.execute(scout.id)

        assert result.criteria_matched is False
        assert result.units_extracted == 0
        assert llm.embed_calls == []
        assert len(llm.chat_calls) == 1
        assert mailer.sent == []
        assert db.get_execution(result.execution_id).summary_text == "Nur Wetterbericht"

    async def test_extraction_requires_location_or_topic(self, pipeline, db, llm):
        scout = make_scout(db, location=None, topic=None, notification_email=None)
        llm.queue(analysis())

        result = await pipeline.execute(scout.id)

        assert result.units_extracted == 0
        assert len(llm.chat_calls) == 1
        assert llm.batch_calls == []

    async def test_extract_units_flag(self, pipeline, db, llm):
        scout = make_scout(db, notification_email=None)
        llm.queue(analysis())

        result = await pipeline.execute(scout.id, extract_units=False)

        assert result.units_extracted == 0
        assert len(llm.chat_calls) == 1

    async def test_extraction_failure_degrades(self, pipeline, db, llm):
        scout = make_scout(db, notification_email=None)
        llm.queue(analysis(), "garbage")

        result = await pipeline.execute(scout.id)

        assert result.status == ExecutionStatus.COMPLETED
        assert result.units_extracted == 0

    async def test_duplicate_of_recent_run(self, pipeline, db, llm, mailer):
        scout = make_scout(db)
        summary = "Schulhaus Leutschenbach wird gebaut"
        llm.queue(analysis(summary=summary), extraction("Eins."))
        first = await pipeline.execute(scout.id)
        assert first.is_duplicate is False

        llm.queue(analysis(summary=summary), extraction("Zwei."))
        second = await pipeline.execute(scout.id)

        assert second.is_duplicate is True
        assert second.notification_sent is False
        assert len(mailer.sent) == 1
        execution = db.get_execution(second.execution_id)
        assert execution.duplicate_similarity == pytest.approx(1.0)

    async def test_recent_summaries_feed_the_analysis(self, pipeline, db, llm):
        scout = make_scout(db, notification_email=None, location=None)
        llm.queue(analysis(summary="Erste Meldung"))
        await pipeline.execute(scout.id)

        llm.queue(analysis(matches=False, summary="Zweite Meldung"))
        await pipeline.execute(scout.id)

        assert "Erste Meldung" in llm.chat_calls[1]["user"]

    async def test_embedding_failure_skips_duplicate_check(self, pipeline, db, llm):
        scout = make_scout(db, location=None, notification_email=None)
        llm.fail_embed = True
        llm.queue(analysis())

        result = await pipeline.execute(scout.id)

        assert result.status == ExecutionStatus.COMPLETED
        assert result.is_duplicate is False

    async def test_unexpected_error_marks_execution_failed(self, pipeline, db, llm, monkeypatch):
        scout = make_scout(db)

        def broken(*args, **kwargs):
            raise RuntimeError("disk full")

        monkeypatch.setattr(db, "recent_summaries", broken)

        with pytest.raises(RuntimeError):
            await pipeline.execute(scout.id)

        execution = db.list_executions(scout.id)[0]
        assert execution.status == ExecutionStatus.FAILED
        assert execution.error_message == "disk full"


# =============================================================================
# Due sweep
# =============================================================================


class TestRunDue:
    async def test_runs_only_due_scouts(self, pipeline, db, scraper):
        now = datetime.now(timezone.utc)
        fresh = make_scout(db, name="fresh")
        db.record_scout_success(fresh.id, now=now - timedelta(hours=2))
        stale = make_scout(db, name="stale", frequency=Frequency.WEEKLY)
        db.record_scout_success(stale.id, now=now - timedelta(days=8))
        never = make_scout(db, name="never")
        make_scout(db, name="inactive", is_active=False)
        scraper.result = ScrapeResult(success=True, markdown="x", change_signal="same")

        stats = await pipeline.run_due(now)

        assert stats.due == 2
        assert stats.completed == 2
        assert {url for url, _ in scraper.calls} == {stale.url, never.url}

    async def test_counts_failures_and_conflicts(self, pipeline, db, scraper):
        busy = make_scout(db, name="busy")
        db.create_execution(busy.id, busy.user_id)
        make_scout(db, name="broken")
        scraper.result = ScrapeResult.failed("DNS error")

        stats = await pipeline.run_due()

        assert stats.skipped == 1
        assert stats.failed == 1
        assert stats.to_dict()["due"] == 2
