"""
JSON Schema validation for admin-authored catalog payloads.

Collects every error rather than failing on the first one, so a field
definition form can show all of its problems at once.
"""

from typing import Any

import jsonschema

from labexam.errors import InvalidFieldDefinition
from labexam.schemas.field_schema import FIELD_DEFINITION_SCHEMA


def validate_against_schema(data: dict[str, Any], schema: dict[str, Any]) -> list[str]:
    """
    Validate a dict against a JSON schema.
    Returns a list of error messages (empty list = valid).
    """
    validator = jsonschema.Draft7Validator(schema)
    return sorted(error.message for error in validator.iter_errors(data))


def validate_field_attributes(attributes: dict[str, Any]) -> None:
    """Raise InvalidFieldDefinition if the attributes break the field schema."""
    errors = validate_against_schema(attributes, FIELD_DEFINITION_SCHEMA)
    if errors:
        raise InvalidFieldDefinition(errors)
