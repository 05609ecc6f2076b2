"""Pydantic models for job submission payloads.

Payloads are opaque to the engine once stored; these models validate and
normalize them at the edges (HTTP gateway and CLI) before submission.
Field names follow the camelCase wire format through aliases.
"""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from djo.db.types import JobType
from djo.jobs.exceptions import PayloadValidationError


class ConvertPayload(BaseModel):
    """Source document to convert into the internal format."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    object_key: str = Field(alias="objectKey", min_length=1)
    source_type: str = Field(alias="sourceType", min_length=1)


class ExportOptions(BaseModel):
    """Rendering options for an export; every field has a default."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    include_notes: bool = Field(default=True, alias="includeNotes")
    preserve_animations: bool = Field(default=False, alias="preserveAnimations")
    page_size: Literal["A4", "Letter", "16:9", "4:3"] = Field(
        default="A4", alias="pageSize"
    )
    orientation: Literal["landscape", "portrait"] = "landscape"
    quality: Literal["low", "medium", "high"] = "high"
    include_slide_numbers: bool = Field(default=True, alias="includeSlideNumbers")
    start_slide: int = Field(default=1, alias="startSlide", ge=1)
    end_slide: int | None = Field(default=None, alias="endSlide", ge=1)

    @model_validator(mode="after")
    def validate_slide_range(self) -> ExportOptions:
        """Ensure the slide range is not reversed."""
        if self.end_slide is not None and self.end_slide < self.start_slide:
            raise ValueError(
                f"endSlide ({self.end_slide}) must not be before "
                f"startSlide ({self.start_slide})"
            )
        return self


class ExportPayload(BaseModel):
    """Internal document to render as a pptx or pdf artifact."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    document_id: str = Field(alias="documentId", min_length=1)
    format: Literal["pptx", "pdf"]
    options: ExportOptions = Field(default_factory=ExportOptions)


class ChatMessage(BaseModel):
    """One message of an AI conversation."""

    model_config = ConfigDict(extra="forbid")

    role: Literal["system", "user", "assistant"]
    content: str


class AIChatPayload(BaseModel):
    """AI-assisted chat/edit request."""

    model_config = ConfigDict(extra="allow")

    messages: list[ChatMessage] = Field(min_length=1)
    model: str | None = None


PAYLOAD_MODELS: dict[JobType, type[BaseModel]] = {
    JobType.CONVERT: ConvertPayload,
    JobType.EXPORT: ExportPayload,
    JobType.AI: AIChatPayload,
}


def format_validation_error(error: ValidationError) -> tuple[str, list[dict]]:
    """Turn a pydantic ValidationError into a message and detail list."""
    details = [
        {
            "field": ".".join(str(x) for x in item.get("loc", [])),
            "message": item.get("msg", ""),
        }
        for item in error.errors()
    ]
    if details:
        first = details[0]
        if first["field"]:
            return f"Invalid payload: {first['field']}: {first['message']}", details
        return f"Invalid payload: {first['message']}", details
    return f"Invalid payload: {error}", details


def validate_payload(job_type: JobType, payload: Any) -> dict[str, Any]:
    """Validate a payload for a job type and return its normalized form.

    Defaults are filled in and field names are emitted in wire format.

    Raises:
        PayloadValidationError: If the payload is invalid.
    """
    if not isinstance(payload, dict):
        raise PayloadValidationError("Invalid payload: must be a JSON object")
    model = PAYLOAD_MODELS[job_type]
    try:
        parsed = model.model_validate(payload)
    except ValidationError as e:
        message, details = format_validation_error(e)
        raise PayloadValidationError(message, details) from e
    return parsed.model_dump(by_alias=True, exclude_none=False)
