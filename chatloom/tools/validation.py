import json
import logging

import jsonschema

from chatloom.tools.base import normalize_schema

logger = logging.getLogger(__name__)

FALLBACK_SCHEMA = {"type": "object", "properties": {}}


class SchemaValidator:
    @staticmethod
    def parse(raw: dict | str | None, tool_name: str) -> dict:
        """
        Turn a declared parameter schema into a usable one.

        Accepts a mapping or a JSON string.  Anything that does not parse or
        is not a valid JSON Schema falls back to an empty object schema.
        """
        if raw is None or (isinstance(raw, str) and not raw.strip()):
            return dict(FALLBACK_SCHEMA)
        if isinstance(raw, str):
            try:
                raw = json.loads(raw)
            except json.JSONDecodeError as e:
                logger.warning("Invalid parameters JSON for tool %s: %s", tool_name, e)
                return dict(FALLBACK_SCHEMA)
        if not isinstance(raw, dict):
            logger.warning("Parameters for tool %s are not an object", tool_name)
            return dict(FALLBACK_SCHEMA)
        schema = normalize_schema(raw)
        try:
            jsonschema.Draft7Validator.check_schema(schema)
        except jsonschema.SchemaError as e:
            logger.warning("Invalid parameters schema for tool %s: %s", tool_name, e.message)
            return dict(FALLBACK_SCHEMA)
        return schema
