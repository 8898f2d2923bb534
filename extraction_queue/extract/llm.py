"""OpenAI-backed field extraction validated against the template's JSON Schema."""

from __future__ import annotations

import json
import logging
from typing import Any

from jsonschema import Draft202012Validator
from jsonschema.exceptions import SchemaError
from openai import OpenAI, OpenAIError

from extraction_queue.core.config import get_settings
from extraction_queue.core.errors import ExtractionValidationError, FieldExtractionError
from extraction_queue.extract.base import ExtractionOptions, ExtractionResult
from extraction_queue.extract.normalize import normalize_extraction
from extraction_queue.extract.prompts import EXTRACTION_USER_PROMPT, MAX_CONTENT_CHARS, SYSTEM_PROMPT

logger = logging.getLogger(__name__)


def template_schema(template: dict[str, Any]) -> dict[str, Any]:
    """Templates either wrap the schema under ``"schema"`` or are the schema."""
    schema = template.get("schema", template)
    if not isinstance(schema, dict):
        raise FieldExtractionError("Template schema must be a JSON object")
    return schema


def _build_user_prompt(structured: dict[str, Any], template: dict[str, Any], schema: dict[str, Any]) -> str:
    instructions = template.get("instructions")
    instructions_block = f"\nInstructions:\n{instructions}\n" if instructions else ""
    content = structured.get("text") or "\n\n".join(p.get("text", "") for p in structured.get("pages", []))
    return EXTRACTION_USER_PROMPT.format(
        instructions_block=instructions_block,
        filename=structured.get("filename", ""),
        content=content[:MAX_CONTENT_CHARS],
        schema=json.dumps(schema),
    )


def validate_against_schema(data: dict[str, Any], schema: dict[str, Any]) -> list[dict[str, Any]]:
    try:
        validator = Draft202012Validator(schema)
    except SchemaError as e:
        raise FieldExtractionError(f"Invalid template schema: {e.message}") from e
    validations: list[dict[str, Any]] = []
    for err in sorted(validator.iter_errors(data), key=lambda e: [str(p) for p in e.path]):
        validations.append(
            {
                "path": "/" + "/".join(str(p) for p in err.path),
                "type": err.validator,
                "message": err.message,
                "severity": "error",
            }
        )
    return validations


class LlmFieldExtractor:
    def __init__(self, client: OpenAI | None = None, model: str | None = None) -> None:
        self._client = client
        self._model = model

    def _get_client(self) -> OpenAI:
        if self._client is None:
            settings = get_settings()
            if not settings.OPENAI_API_KEY:
                raise FieldExtractionError("OPENAI_API_KEY is not configured")
            self._client = OpenAI(api_key=settings.OPENAI_API_KEY)
        return self._client

    def extract(
        self, structured: dict[str, Any], template: dict[str, Any], options: ExtractionOptions
    ) -> ExtractionResult:
        schema = template_schema(template)
        model = self._model or get_settings().OPENAI_MODEL
        client = self._get_client()

        try:
            chat = client.chat.completions.create(
                model=model,
                temperature=0.1,
                response_format={"type": "json_object"},
                messages=[
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": _build_user_prompt(structured, template, schema)},
                ],
            )
        except OpenAIError as e:
            raise FieldExtractionError(f"LLM request failed: {e}") from e

        content = chat.choices[0].message.content if chat.choices else None
        if not content:
            raise FieldExtractionError("Empty response from LLM")
        try:
            data = json.loads(content)
        except ValueError as e:
            raise FieldExtractionError(f"LLM returned invalid JSON: {e}") from e
        if not isinstance(data, dict):
            raise FieldExtractionError("LLM returned a non-object JSON document")

        data = normalize_extraction(data, schema)
        validations = validate_against_schema(data, schema)
        if validations:
            logger.warning("Extraction produced %d validation error(s)", len(validations))
            if options.fail_on_validation:
                raise ExtractionValidationError(validations)

        meta: dict[str, Any] = {}
        if options.include_meta:
            meta = {"model": model, "template": template.get("name"), "pages": len(structured.get("pages", []))}
        return ExtractionResult(data=data, validations=validations, meta=meta)
