from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field, field_validator


class CheckpointRecord(BaseModel):
    """A restore point the backend recorded around a tool call."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)

    id: str
    message_index: int = Field(default=0, alias="messageIndex")
    tool_name: str | None = Field(default=None, alias="toolName")
    # "before" | "after"
    phase: str | None = None
    timestamp: int | None = None

    @field_validator("id")
    @classmethod
    def _validate_id(cls, v: str) -> str:
        cleaned = v.strip() if isinstance(v, str) else ""
        if not cleaned:
            raise ValueError("checkpoint id must be a non-empty string.")
        return cleaned

    @field_validator("message_index")
    @classmethod
    def _validate_message_index(cls, v: int) -> int:
        if v < 0:
            raise ValueError("messageIndex must be >= 0.")
        return v
