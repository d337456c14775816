from __future__ import annotations

from typing import Any, Dict, Literal, Optional, TypeAlias

from pydantic import BaseModel, Field

JsonPrimitive: TypeAlias = str | int | float | bool | None
JsonValue: TypeAlias = JsonPrimitive | list["JsonValue"] | dict[str, "JsonValue"]

REPORT_SCHEMA_VERSION = "1.0"

StageStatusLiteral = Literal["ok", "partial", "failed", "skipped"]


class StageRecord(BaseModel):
    stage: str
    status: StageStatusLiteral
    started_at: str
    finished_at: str
    duration_s: float
    details: Dict[str, Any] = Field(default_factory=dict)
    limitations: list[str] = Field(default_factory=list)
    error: Optional[str] = None


class ExtractionReport(BaseModel):
    schema_version: str = REPORT_SCHEMA_VERSION
    source: str
    destination: str
    status: StageStatusLiteral
    stages: list[StageRecord] = Field(default_factory=list)
    limitations: list[str] = Field(default_factory=list)


def printable_str(value: str) -> str:
    """Render undecodable file-name bytes as `\\xNN` so the text serializes as UTF-8."""

    return value.encode("utf-8", "surrogateescape").decode("utf-8", "backslashreplace")


def printable(value: JsonValue) -> JsonValue:
    if isinstance(value, str):
        return printable_str(value)
    if isinstance(value, list):
        return [printable(v) for v in value]
    if isinstance(value, dict):
        return {printable_str(k): printable(v) for k, v in value.items()}
    return value
