"""JSON-schema checks for tool definitions and call arguments."""

from __future__ import annotations

import jsonschema

from toolrelay.tools.base import Tool, normalize_schema


def check_schema(schema: dict | None) -> str | None:
    """Return a description of what is wrong with *schema*, or ``None``."""
    try:
        jsonschema.Draft7Validator.check_schema(normalize_schema(schema))
    except jsonschema.SchemaError as e:
        return str(e.message)
    return None


def _describe(error: jsonschema.ValidationError) -> str:
    path = ".".join(str(p) for p in error.absolute_path)
    return f"{path}: {error.message}" if path else str(error.message)


class ToolValidator:
    @staticmethod
    def errors(tool: Tool, arguments: dict) -> list[str]:
        """Every schema violation in *arguments*, in document order."""
        validator = jsonschema.Draft7Validator(normalize_schema(tool.parameters))
        found = sorted(validator.iter_errors(arguments), key=lambda e: [str(p) for p in e.absolute_path])
        return [_describe(e) for e in found]

    @staticmethod
    def validate(tool: Tool, arguments: dict) -> tuple[bool, str | None]:
        problems = ToolValidator.errors(tool, arguments)
        if problems:
            return False, "; ".join(problems)
        return True, None
