from __future__ import annotations

from datetime import datetime, timezone
from collections.abc import Mapping
from typing import Literal, TypeVar

from pydantic import BaseModel, Field, field_validator


def _ensure_utc(value: datetime) -> datetime:
    if value.tzinfo is None or value.tzinfo.utcoffset(value) is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


TBaseSchema = TypeVar("TBaseSchema", bound="BaseSchema")

MessageType = Literal["log", "info", "warn", "error", "done"]


class BaseSchema(BaseModel):
    def to_json(self) -> str:
        return self.model_dump_json()

    def to_dict(self) -> dict[str, object]:
        return self.model_dump()

    @classmethod
    def from_json(cls: type[TBaseSchema], data: str) -> TBaseSchema:
        return cls.model_validate_json(data)

    @classmethod
    def from_dict(cls: type[TBaseSchema], data: Mapping[str, object]) -> TBaseSchema:
        return cls.model_validate(data)


class LibraryReference(BaseSchema):
    id: str
    name: str
    url: str
    domain: str
    added_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @field_validator("added_at")
    @classmethod
    def added_at_utc(cls, value: datetime) -> datetime:
        return _ensure_utc(value)

    @property
    def module_name(self) -> str:
        """Importable module name the library is registered under inside a run."""
        cleaned = "".join(ch if ch.isalnum() else "_" for ch in self.name.lower())
        cleaned = cleaned.strip("_") or "library"
        if cleaned[0].isdigit():
            cleaned = f"lib_{cleaned}"
        return cleaned


class Message(BaseSchema):
    """One envelope received from an execution context."""

    authenticated: bool = Field(alias="__sandbox", default=False)
    secret: str = ""
    type: MessageType = "log"
    args: list[str] = Field(default_factory=list)

    model_config = {"populate_by_name": True}


class SyntaxCheck(BaseSchema):
    valid: bool
    error: str | None = None
    name: str | None = None
    lineno: int | None = None

    def describe(self) -> str:
        if self.valid:
            return "OK"
        text = f"{self.name or 'SyntaxError'}: {self.error}"
        if self.lineno is not None:
            text += f" (line {self.lineno})"
        return text


class ReferenceCheck(BaseSchema):
    valid: bool
    domain: str | None = None
    domain_allowed: bool = False
    needs_approval: bool = False
    error: str | None = None


class AddResult(BaseSchema):
    success: bool
    library: LibraryReference | None = None
    needs_approval: bool = False
    domain: str | None = None
    error: str | None = None
