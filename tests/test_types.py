"""Tests for job types."""

import json
from datetime import UTC, datetime, timedelta, timezone

from jobstash.types import JobRecord, UpdateResult, ensure_utc, serialize_error


class TestEnsureUtc:
    def test_naive_is_treated_as_utc(self):
        """Test naive datetimes are read as UTC."""
        result = ensure_utc(datetime(2030, 1, 1, 9, 0))
        assert result == datetime(2030, 1, 1, 9, 0, tzinfo=UTC)
        assert result.tzinfo is UTC

    def test_converts_other_offsets(self):
        """Test aware datetimes are converted to UTC."""
        plus_two = timezone(timedelta(hours=2))
        result = ensure_utc(datetime(2030, 1, 1, 11, 0, tzinfo=plus_two))
        assert result == datetime(2030, 1, 1, 9, 0, tzinfo=UTC)
        assert result.utcoffset() == timedelta(0)

    def test_truncates_to_milliseconds(self):
        """Test sub-millisecond precision is dropped."""
        result = ensure_utc(datetime(2030, 1, 1, 9, 0, 0, 123456, tzinfo=UTC))
        assert result.microsecond == 123000


class TestUpdateResult:
    def test_succeeded_requires_one_match_and_one_modification(self):
        assert UpdateResult(matched_count=1, modified_count=1).succeeded
        assert not UpdateResult(matched_count=1, modified_count=0).succeeded
        assert not UpdateResult(matched_count=0, modified_count=0).succeeded
        assert not UpdateResult().succeeded


class TestJobRecord:
    """Tests for JobRecord."""

    def test_defaults_for_new_record(self):
        """Test a new record is active, unlocked and error free."""
        record = JobRecord(id="a", due_at=datetime(2030, 1, 1, tzinfo=UTC))
        assert record.is_active is True
        assert record.is_locked is False
        assert record.retried_count == 0
        assert record.error_count == 0
        assert record.error_messages == []
        assert record.metadata == {}
        assert record.updated_at is None
        assert record.is_abandoned is False

    def test_normalizes_due_at(self):
        """Test due_at is normalized on construction."""
        record = JobRecord(id="a", due_at=datetime(2030, 1, 1, 9, 0, 0, 999999))
        assert record.due_at == datetime(2030, 1, 1, 9, 0, 0, 999000, tzinfo=UTC)

    def test_document_uses_camel_case_keys(self, make_record):
        """Test documents use the stored key names."""
        record = make_record(metadata={"op": "x"}, error_count=2)
        doc = record.to_document()
        assert doc["id"] == "job-1"
        assert doc["dueAt"] == record.due_at
        assert doc["metadata"] == {"op": "x"}
        assert doc["isActive"] is True
        assert doc["isLocked"] is False
        assert doc["errorCount"] == 2
        assert doc["errorMessages"] == []
        assert "updatedAt" not in doc

    def test_from_document_fills_missing_fields(self):
        """Documents written without counters read back as fresh records."""
        record = JobRecord.from_document(
            {"id": "legacy", "dueAt": datetime(2030, 1, 1, 9, 0)}
        )
        assert record.id == "legacy"
        assert record.due_at == datetime(2030, 1, 1, 9, 0, tzinfo=UTC)
        assert record.metadata == {}
        assert record.is_active is True
        assert record.is_locked is False
        assert record.retried_count == 0
        assert record.error_count == 0
        assert record.error_messages == []

    def test_from_document_reads_stored_state(self, make_record):
        """Test a document round-trips counters and flags."""
        original = make_record(
            is_active=False,
            retried_count=3,
            error_count=4,
            error_messages=["a", "b"],
            updated_at=datetime(2030, 1, 2, tzinfo=UTC),
        )
        record = JobRecord.from_document(original.to_document())
        assert record == original
        assert record.is_abandoned


class TestSerializeError:
    def test_contains_message_type_and_stack(self):
        """Test the serialized error carries message, type and stack."""
        try:
            raise ValueError("boom")
        except ValueError as e:
            payload = json.loads(serialize_error(e))

        assert payload["message"] == "boom"
        assert payload["type"] == "ValueError"
        assert payload["code"] is None
        assert "raise ValueError" in payload["stack"]

    def test_includes_error_code_attribute(self):
        """Test an error's code attribute is kept."""
        class CodedError(Exception):
            code = "E_TIMEOUT"

        payload = json.loads(serialize_error(CodedError("slow")))
        assert payload["code"] == "E_TIMEOUT"
        assert payload["message"] == "slow"
