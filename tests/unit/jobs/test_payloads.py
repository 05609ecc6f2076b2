"""Unit tests for submission payload validation."""

import pytest

from djo.db.types import JobType
from djo.jobs.exceptions import PayloadValidationError
from djo.jobs.payloads import validate_payload


class TestConvertPayload:
    """Tests for convert payloads."""

    def test_valid_payload_keeps_extra_fields(self):
        payload = validate_payload(
            JobType.CONVERT,
            {"objectKey": "uploads/a.pdf", "sourceType": "pdf", "title": "Deck"},
        )
        assert payload == {
            "objectKey": "uploads/a.pdf",
            "sourceType": "pdf",
            "title": "Deck",
        }

    def test_missing_field_is_reported_by_wire_name(self):
        with pytest.raises(PayloadValidationError) as exc_info:
            validate_payload(JobType.CONVERT, {"objectKey": "a.pdf"})
        fields = [d["field"] for d in exc_info.value.details]
        assert fields == ["sourceType"]
        assert "sourceType" in str(exc_info.value)


class TestExportPayload:
    """Tests for export payloads."""

    def test_defaults_are_filled_in(self):
        payload = validate_payload(
            JobType.EXPORT, {"documentId": "doc_1", "format": "pptx"}
        )
        assert payload["options"]["pageSize"] == "A4"
        assert payload["options"]["includeNotes"] is True
        assert payload["options"]["startSlide"] == 1
        assert payload["options"]["endSlide"] is None

    def test_unknown_format_rejected(self):
        with pytest.raises(PayloadValidationError) as exc_info:
            validate_payload(JobType.EXPORT, {"documentId": "doc_1", "format": "docx"})
        assert exc_info.value.details[0]["field"] == "format"

    def test_reversed_slide_range_rejected(self):
        with pytest.raises(PayloadValidationError):
            validate_payload(
                JobType.EXPORT,
                {
                    "documentId": "doc_1",
                    "format": "pdf",
                    "options": {"startSlide": 5, "endSlide": 2},
                },
            )

    def test_unknown_option_rejected(self):
        with pytest.raises(PayloadValidationError):
            validate_payload(
                JobType.EXPORT,
                {"documentId": "doc_1", "format": "pdf", "options": {"color": "red"}},
            )


class TestAIChatPayload:
    """Tests for ai payloads."""

    def test_valid_conversation(self):
        payload = validate_payload(
            JobType.AI,
            {"messages": [{"role": "user", "content": "Summarize slide 2"}]},
        )
        assert payload["messages"][0]["role"] == "user"
        assert payload["model"] is None

    def test_empty_conversation_rejected(self):
        with pytest.raises(PayloadValidationError):
            validate_payload(JobType.AI, {"messages": []})

    def test_unknown_role_rejected(self):
        with pytest.raises(PayloadValidationError):
            validate_payload(
                JobType.AI, {"messages": [{"role": "robot", "content": "hi"}]}
            )


@pytest.mark.parametrize("payload", [None, [], "text", 42])
def test_payload_must_be_object(payload):
    """Anything but a JSON object is rejected before model validation."""
    with pytest.raises(PayloadValidationError) as exc_info:
        validate_payload(JobType.CONVERT, payload)
    assert exc_info.value.status == 400
