"""Prompt templates for template-driven field extraction."""

SYSTEM_PROMPT = (
    "You are an information extraction engine. Given the text of a business document "
    "and a JSON Schema describing the fields to capture, output strictly valid JSON "
    "adhering to the schema. Never include prose."
)

EXTRACTION_USER_PROMPT = """
Extract the fields described by the JSON Schema below from the document.
Return STRICT JSON conforming to the schema.
If information is missing, use null rather than guessing.
{instructions_block}
Document: {filename}

Content (plaintext):
{content}

JSON Schema:
{schema}
"""

# Cap on document text sent to the model
MAX_CONTENT_CHARS = 24000
