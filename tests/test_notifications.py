"""Tests for alert email rendering and small helpers."""

from datetime import datetime, timedelta, timezone

import pytest

from models.scout import ChangeStatus, Frequency, Scout
from notifications import build_alert_subject, build_scout_alert_email
from tools.scrape import get_domain


class TestAlertEmail:
    def test_subject_with_city(self):
        assert build_alert_subject("Gemeinderat", "Riehen") == "Scout-Alarm: Gemeinderat (Riehen)"

    def test_subject_without_city(self):
        assert build_alert_subject("Gemeinderat", None) == "Scout-Alarm: Gemeinderat"

    def test_escapes_model_and_user_text(self):
        body = build_scout_alert_email(
            "<b>Scout</b>",
            "Summary with <script>alert(1)</script>",
            ["A & B"],
            'https://example.ch/?q="x"',
        )
        assert "<script>" not in body
        assert "&lt;script&gt;" in body
        assert "&lt;b&gt;Scout&lt;/b&gt;" in body
        assert "<li>A &amp; B</li>" in body
        assert 'href="https://example.ch/?q=&quot;x&quot;"' in body

    def test_findings_block_optional(self):
        body = build_scout_alert_email("Scout", "Summary", [], "https://example.ch")
        assert 'class="findings"' not in body

    def test_english_labels(self):
        body = build_scout_alert_email("Scout", "Summary", ["x"], "https://example.ch", language="en")
        assert "Scout Alert" in body
        assert "Key findings" in body
        assert 'lang="en"' in body


class TestGetDomain:
    @pytest.mark.parametrize(
        "url,expected",
        [
            ("https://www.riehen.ch/aktuell", "riehen.ch"),
            ("https://gemeinde.example.org/news?id=1", "gemeinde.example.org"),
            ("not a url", "not a url"),
        ],
    )
    def test_domains(self, url, expected):
        assert get_domain(url) == expected


class TestScoutModel:
    @pytest.mark.parametrize(
        "signal,expected",
        [
            ("new", ChangeStatus.FIRST_RUN),
            ("same", ChangeStatus.SAME),
            ("changed", ChangeStatus.CHANGED),
            ("removed", ChangeStatus.CHANGED),
            (None, ChangeStatus.CHANGED),
        ],
    )
    def test_change_signal(self, signal, expected):
        assert ChangeStatus.from_signal(signal) == expected

    def test_cadence(self):
        now = datetime(2026, 3, 10, tzinfo=timezone.utc)
        scout = Scout(id="s", user_id="u", name="n", url="https://example.ch", frequency=Frequency.BIWEEKLY)

        assert scout.is_due(now)
        scout.last_run_at = now - timedelta(days=13)
        assert not scout.is_due(now)
        scout.last_run_at = now - timedelta(days=14)
        assert scout.is_due(now)
        scout.is_active = False
        assert not scout.is_due(now)
