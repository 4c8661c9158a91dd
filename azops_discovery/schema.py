"""
JSON Schema definitions for state records.

A state record is an ARM deployment parameters document whose single
``input`` parameter carries the discovered entity.
"""

from __future__ import annotations

from typing import Any

from jsonschema import Draft7Validator

DEPLOYMENT_PARAMETERS_SCHEMA_URL = (
    "https://schema.management.azure.com/schemas/2019-04-01/deploymentParameters.json#"
)
CONTENT_VERSION = "1.0.0.0"

POLICY_PROPERTY_KEYS = (
    "policyDefinitions",
    "policySetDefinitions",
    "policyAssignments",
    "roleDefinitions",
    "roleAssignments",
)

STATE_RECORD_SCHEMA: dict[str, Any] = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "title": "AzOps State Record",
    "type": "object",
    "required": ["$schema", "contentVersion", "parameters"],
    "additionalProperties": False,
    "properties": {
        "$schema": {"type": "string", "const": DEPLOYMENT_PARAMETERS_SCHEMA_URL},
        "contentVersion": {"type": "string", "const": CONTENT_VERSION},
        "parameters": {
            "type": "object",
            "required": ["input"],
            "additionalProperties": False,
            "properties": {
                "input": {
                    "type": "object",
                    "required": ["value"],
                    "additionalProperties": False,
                    "properties": {
                        "value": {
                            "type": "object",
                            "required": ["id"],
                            "properties": {
                                "id": {"type": "string", "minLength": 1},
                                "properties": {"type": ["object", "null"]},
                            },
                        },
                    },
                },
            },
        },
    },
}

# Property bag of subscription and management group records after the policy
# merge. Plain entity records are not checked against it.
COMPOSITE_PROPERTIES_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": list(POLICY_PROPERTY_KEYS),
    "properties": {
        "policyDefinitions": {"type": "array", "items": {"type": "object"}},
        "policySetDefinitions": {"type": "array", "items": {"type": "object"}},
        "policyAssignments": {"type": "array", "items": {"type": "object"}},
        "roleDefinitions": {"type": "null"},
        "roleAssignments": {"type": "null"},
    },
}

_validator = Draft7Validator(STATE_RECORD_SCHEMA)
_composite_validator = Draft7Validator(COMPOSITE_PROPERTIES_SCHEMA)


def validate_state_record(record: dict[str, Any], composite: bool = False) -> tuple[bool, list[str]]:
    """
    Validate a state record against the schema.

    Args:
        record: State record to validate
        composite: Also check the merged policy property bag

    Returns:
        Tuple of (is_valid, list of error messages)
    """
    errors = []
    for error in _validator.iter_errors(record):
        path = ".".join(str(p) for p in error.absolute_path) or "(root)"
        errors.append(f"{path}: {error.message}")

    if composite and not errors:
        properties = record["parameters"]["input"]["value"].get("properties")
        for error in _composite_validator.iter_errors(properties):
            path = ".".join(
                ["parameters.input.value.properties"] + [str(p) for p in error.absolute_path]
            )
            errors.append(f"{path}: {error.message}")

    return len(errors) == 0, errors


def build_state_record(entity: dict[str, Any]) -> dict[str, Any]:
    """Wrap an entity in the deployment parameters envelope."""
    return {
        "$schema": DEPLOYMENT_PARAMETERS_SCHEMA_URL,
        "contentVersion": CONTENT_VERSION,
        "parameters": {
            "input": {
                "value": entity,
            },
        },
    }
