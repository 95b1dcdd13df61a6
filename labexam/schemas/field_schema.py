"""
JSON schema for field-definition attributes.

Acts as the contract for catalog administration payloads before they reach
the Field Definition Store. Select fields must declare their choices.
"""

FIELD_DEFINITION_SCHEMA: dict = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "title": "Exam field definition",
    "type": "object",
    "required": ["name", "value_type"],
    "properties": {
        "name": {"type": "string", "minLength": 1, "maxLength": 255},
        "value_type": {
            "type": "string",
            "enum": ["number", "text", "select", "boolean", "long-text"],
        },
        "unit": {"type": ["string", "null"], "maxLength": 64},
        "reference_range": {
            "type": ["string", "null"],
            "description": "Free text, e.g. '4-10', '>=5', '< 200'.",
        },
        "options": {
            "type": ["array", "null"],
            "items": {"type": "string", "minLength": 1},
            "uniqueItems": True,
        },
        "required": {"type": "boolean"},
        "display_order": {"type": "integer", "minimum": 0},
        "section": {"type": ["string", "null"], "maxLength": 255},
        "description": {"type": ["string", "null"]},
    },
    "additionalProperties": False,
    "if": {"properties": {"value_type": {"const": "select"}}},
    "then": {
        "required": ["options"],
        "properties": {"options": {"type": "array", "minItems": 1}},
    },
}
