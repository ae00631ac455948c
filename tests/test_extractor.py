"""Tests for unit extraction from scraped pages and manual text."""

import sqlite3

import pytest

from agents.extractor import MANUAL_SOURCE_URL, MAX_UNITS, SCRAPED_MAX_CHARS, UnitExtractor
from errors import CollaboratorError, ValidationError
from models.scout import Location
from models.unit import SourceType, UnitType

from tests.conftest import FakeLLM, extraction


@pytest.fixture
def scout(db):
    return db.create_scout(
        "user-1",
        "Gemeinde Zürich",
        "https://www.stadt-zuerich.ch/news",
        location=Location(city="Zurich", country="CH"),
        topic="Politik",
    )


@pytest.fixture
def execution(db, scout):
    return db.create_execution(scout.id, scout.user_id)


class TestExtractStatements:
    async def test_caps_at_max_units(self, db):
        llm = FakeLLM([extraction(*[f"Aussage {i}." for i in range(12)])])
        units = await UnitExtractor(llm, db).extract_statements("text")
        assert len(units) == MAX_UNITS

    async def test_drops_empty_statements(self, db):
        llm = FakeLLM([extraction("Eins.", "   ", "Zwei.")])
        units = await UnitExtractor(llm, db).extract_statements("text")
        assert [u.statement for u in units] == ["Eins.", "Zwei."]

    async def test_unusable_output_returns_none(self, db):
        llm = FakeLLM(["<html>oops</html>"])
        assert await UnitExtractor(llm, db).extract_statements("text") is None

    async def test_normalizes_type_and_date(self, db):
        llm = FakeLLM([{
            "units": [
                {"statement": "Fest am Samstag.", "unitType": "event", "eventDate": "2026-05-02"},
                {"statement": "Neuer Präsident.", "unitType": "gossip", "eventDate": "next week"},
            ]
        }])
        units = await UnitExtractor(llm, db).extract_statements("text")
        assert units[0].unit_type == UnitType.EVENT
        assert units[0].event_date == "2026-05-02"
        assert units[1].unit_type == UnitType.FACT
        assert units[1].event_date is None

    async def test_uses_low_temperature(self, db):
        llm = FakeLLM([extraction("Eins.")])
        await UnitExtractor(llm, db).extract_statements("text")
        assert llm.chat_calls[0]["temperature"] == 0.1
        assert "<SCRAPED_CONTENT>" in llm.chat_calls[0]["user"]


class TestExtractFromScout:
    async def test_stores_units_with_scout_context(self, db, scout, execution):
        llm = FakeLLM([extraction("Der Gemeinderat tagt am Montag.", "Die Schule wird saniert.")])
        count = await UnitExtractor(llm, db).extract("Seite", scout, execution.id)

        assert count == 2
        units = db.list_units("user-1")
        assert {u.statement for u in units} == {"Der Gemeinderat tagt am Montag.", "Die Schule wird saniert."}
        unit = units[0]
        assert unit.scout_id == scout.id
        assert unit.execution_id == execution.id
        assert unit.location.city == "Zurich"
        assert unit.topic == "Politik"
        assert unit.source_url == scout.url
        assert unit.source_domain == "stadt-zuerich.ch"
        assert unit.source_type == SourceType.SCOUT

    async def test_in_batch_duplicates_first_wins(self, db, scout, execution):
        llm = FakeLLM(
            [extraction("A original.", "A paraphrase.", "B.")],
            embeddings={
                "A original.": [1.0, 0.0, 0.0],
                "A paraphrase.": [0.95, 0.05, 0.0],
                "B.": [0.0, 1.0, 0.0],
            },
        )
        count = await UnitExtractor(llm, db, dedup_threshold=0.75).extract("Seite", scout, execution.id)

        assert count == 2
        assert {u.statement for u in db.list_units("user-1")} == {"A original.", "B."}
        assert llm.batch_calls == [["A original.", "A paraphrase.", "B."]]

    async def test_truncates_content(self, db, scout, execution):
        llm = FakeLLM([extraction("Eins.")])
        await UnitExtractor(llm, db).extract("y" * (SCRAPED_MAX_CHARS + 100), scout, execution.id)
        user_message = llm.chat_calls[0]["user"]
        assert "y" * SCRAPED_MAX_CHARS in user_message
        assert "y" * (SCRAPED_MAX_CHARS + 1) not in user_message

    async def test_unusable_output_stores_nothing(self, db, scout, execution):
        llm = FakeLLM(["not json"])
        assert await UnitExtractor(llm, db).extract("Seite", scout, execution.id) == 0
        assert llm.batch_calls == []

    async def test_insert_failure_skips_only_that_unit(self, db, scout, execution, monkeypatch):
        llm = FakeLLM([extraction("Eins.", "Zwei.", "Drei.")])
        original = db.insert_unit
        calls = {"n": 0}

        def flaky_insert(**kwargs):
            calls["n"] += 1
            if calls["n"] == 2:
                raise sqlite3.OperationalError("database is locked")
            return original(**kwargs)

        monkeypatch.setattr(db, "insert_unit", flaky_insert)
        count = await UnitExtractor(llm, db).extract("Seite", scout, execution.id)

        assert count == 2
        assert {u.statement for u in db.list_units("user-1")} == {"Eins.", "Drei."}


class TestExtractFromText:
    TEXT = "Der Dorfladen in Riehen schliesst Ende Monat nach 40 Jahren."

    async def test_stores_manual_units(self, db):
        llm = FakeLLM([extraction("Der Dorfladen schliesst Ende Monat.")])
        ids = await UnitExtractor(llm, db).extract_from_text(
            self.TEXT, "user-1", location=Location(city="Riehen"), topic=None, source_title="Leserbrief"
        )

        assert len(ids) == 1
        unit = db.get_units("user-1", ids)[0]
        assert unit.source_type == SourceType.MANUAL_TEXT
        assert unit.source_url == MANUAL_SOURCE_URL
        assert unit.source_domain == "manual"
        assert unit.source_title == "Leserbrief"
        assert unit.scout_id is None
        assert unit.execution_id is None
        assert "<USER_CONTENT>" in llm.chat_calls[0]["user"]

    @pytest.mark.parametrize(
        "text,location,topic",
        [
            ("zu kurz", Location(city="Riehen"), None),
            ("                         kurz                 ", None, "Politik"),
            ("x" * 6001, None, "Politik"),
            ("Ein ausreichend langer Text ohne Ort oder Thema.", None, None),
        ],
    )
    async def test_validation_before_any_model_call(self, db, text, location, topic):
        llm = FakeLLM()
        with pytest.raises(ValidationError):
            await UnitExtractor(llm, db).extract_from_text(text, "user-1", location=location, topic=topic)
        assert llm.chat_calls == []

    async def test_unusable_output_is_an_error(self, db):
        llm = FakeLLM(["no json here"])
        with pytest.raises(CollaboratorError):
            await UnitExtractor(llm, db).extract_from_text(self.TEXT, "user-1", location=None, topic="Gewerbe")

    async def test_empty_result(self, db):
        llm = FakeLLM([{"units": []}])
        ids = await UnitExtractor(llm, db).extract_from_text(self.TEXT, "user-1", location=None, topic="Gewerbe")
        assert ids == []
