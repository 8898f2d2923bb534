"""Collaborator interfaces the extraction worker depends on."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol


@dataclass
class ExtractionOptions:
    include_meta: bool = True
    include_evidence: bool = False
    fail_on_validation: bool = False


@dataclass
class ExtractionResult:
    data: dict[str, Any]
    validations: list[dict[str, Any]] = field(default_factory=list)
    meta: dict[str, Any] = field(default_factory=dict)

    @property
    def errors(self) -> list[dict[str, Any]]:
        return [v for v in self.validations if v.get("severity", "error") == "error"]

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"data": self.data, "validations": self.validations}
        if self.meta:
            out["meta"] = self.meta
        return out


class DocumentConverter(Protocol):
    def convert(self, document: bytes, filename: str) -> dict[str, Any]:
        """Return structured JSON for the document or raise ConversionError."""
        ...


class FieldExtractor(Protocol):
    def extract(
        self, structured: dict[str, Any], template: dict[str, Any], options: ExtractionOptions
    ) -> ExtractionResult:
        """Map structured data onto template fields or raise FieldExtractionError."""
        ...
