"""JSON Schema validation engine for formweave.

This module wraps jsonschema and translates its errors into FieldError records.
It is used in two places:
- loading authored definitions (fields, templates, workflow rules) from dicts
- checking the committed form payload on submit, against a schema derived from
  the field descriptors and the live field state (visibility, required flags,
  option filters)
"""

from dataclasses import dataclass
from typing import Any, Dict, FrozenSet, Iterable, List, Optional

import jsonschema
from jsonschema import Draft7Validator, FormatChecker

from formweave.errors import FieldError
from formweave.types import FieldErrorCode, FieldType


@dataclass(frozen=True)
class ValidationResult:
    """Result of validating data against a JSON Schema.

    Attributes:
        is_valid: Whether the data passed all validation checks
        errors: List of field-level validation errors (empty if valid)
        data: The validated data
        missing_fields: List of required field paths that are missing
        invalid_fields: List of field paths that failed validation

    Examples:
        >>> schema = {'type': 'object', 'properties': {'title': {'type': 'string'}}, 'required': ['title']}
        >>> result = ValidationEngine(schema).validate({'title': 'Printer on fire'})
        >>> result.is_valid
        True
    """
    is_valid: bool
    errors: List[FieldError]
    data: Optional[Dict[str, Any]] = None
    missing_fields: Optional[List[str]] = None
    invalid_fields: Optional[List[str]] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dict for serialization."""
        result: Dict[str, Any] = {
            "isValid": self.is_valid,
            "errors": [e.to_dict() for e in self.errors],
        }
        if self.data is not None:
            result["data"] = self.data
        if self.missing_fields is not None:
            result["missingFields"] = self.missing_fields
        if self.invalid_fields is not None:
            result["invalidFields"] = self.invalid_fields
        return result


class ValidationEngine:
    """JSON Schema validation engine.

    Attributes:
        schema: The JSON Schema definition to validate against
        validator: The underlying jsonschema validator instance
    """

    def __init__(self, schema: Dict[str, Any]) -> None:
        """Initialize the validation engine with a JSON Schema.

        Raises:
            jsonschema.SchemaError: If the provided schema is invalid
        """
        self.schema = schema
        Draft7Validator.check_schema(schema)
        self.validator = Draft7Validator(schema, format_checker=FormatChecker())

    def validate(self, data: Any) -> ValidationResult:
        """Validate data against the schema.

        Examples:
            >>> engine = ValidationEngine({'type': 'object', 'required': ['title']})
            >>> result = engine.validate({})
            >>> result.errors[0].code
            <FieldErrorCode.REQUIRED: 'required'>
        """
        errors = sorted(self.validator.iter_errors(data), key=lambda e: [str(p) for p in e.path])

        if not errors:
            return ValidationResult(
                is_valid=True,
                errors=[],
                data=data,
                missing_fields=[],
                invalid_fields=[],
            )

        field_errors: List[FieldError] = []
        missing_fields: List[str] = []
        invalid_fields: List[str] = []

        for error in errors:
            field_error = self._translate_error(error)
            field_errors.append(field_error)

            if field_error.code == FieldErrorCode.REQUIRED:
                missing_fields.append(field_error.path)
            else:
                invalid_fields.append(field_error.path)

        return ValidationResult(
            is_valid=False,
            errors=field_errors,
            data=data,
            missing_fields=missing_fields,
            invalid_fields=invalid_fields,
        )

    def _translate_error(self, error: jsonschema.ValidationError) -> FieldError:
        """Translate a jsonschema ValidationError to a FieldError.

        Error mapping:
            - 'required' property errors -> REQUIRED
            - 'type' errors -> INVALID_TYPE
            - 'format' errors -> INVALID_FORMAT
            - 'enum' or 'const' errors -> INVALID_VALUE
            - 'minLength' errors -> TOO_SHORT
            - 'maxLength' errors -> TOO_LONG
            - Other constraint errors -> CUSTOM
        """
        path = ".".join(str(p) for p in error.path)

        if error.validator == "required":
            missing_prop = error.message.split("'")[1] if "'" in error.message else "field"
            full_path = f"{path}.{missing_prop}" if path else missing_prop
            return FieldError(
                path=full_path,
                code=FieldErrorCode.REQUIRED,
                message=f"Field '{full_path}' is required but was not provided",
                expected="required field",
            )

        if error.validator == "type":
            expected_type = error.validator_value
            received_type = type(error.instance).__name__
            return FieldError(
                path=path,
                code=FieldErrorCode.INVALID_TYPE,
                message=f"Field '{path}' has invalid type. Expected {expected_type}, got {received_type}",
                expected=expected_type,
                received=received_type,
            )

        if error.validator == "format":
            return FieldError(
                path=path,
                code=FieldErrorCode.INVALID_FORMAT,
                message=f"Field '{path}' has invalid format. Expected {error.validator}: {error.validator_value}",
                expected=error.validator_value,
                received=error.instance,
            )

        if error.validator in ("enum", "const"):
            expected_values = error.validator_value
            return FieldError(
                path=path,
                code=FieldErrorCode.INVALID_VALUE,
                message=f"Field '{path}' has invalid value. Must be one of: {expected_values}",
                expected=expected_values,
                received=error.instance,
            )

        if error.validator == "minLength":
            min_length = error.validator_value
            actual_length = len(error.instance) if error.instance else 0
            return FieldError(
                path=path,
                code=FieldErrorCode.TOO_SHORT,
                message=f"Field '{path}' is too short. Minimum length: {min_length}, got: {actual_length}",
                expected=f"minimum {min_length} characters",
                received=f"{actual_length} characters",
            )

        if error.validator == "maxLength":
            max_length = error.validator_value
            actual_length = len(error.instance) if error.instance else 0
            return FieldError(
                path=path,
                code=FieldErrorCode.TOO_LONG,
                message=f"Field '{path}' is too long. Maximum length: {max_length}, got: {actual_length}",
                expected=f"maximum {max_length} characters",
                received=f"{actual_length} characters",
            )

        return FieldError(
            path=path,
            code=FieldErrorCode.CUSTOM,
            message=f"Field '{path}' validation failed: {error.message}",
            expected=error.validator_value,
            received=error.instance,
        )


def _allowed_options(descriptor: Any, state: Any) -> Optional[FrozenSet[str]]:
    allowed: Optional[FrozenSet[str]] = None
    for candidate in (descriptor.options, state.options, state.options_filter):
        if candidate is None:
            continue
        candidate = frozenset(candidate)
        allowed = candidate if allowed is None else allowed & candidate
    return allowed


def _field_schema(descriptor: Any, state: Any) -> Dict[str, Any]:
    allowed = _allowed_options(descriptor, state)

    if descriptor.type is FieldType.TAG_LIST:
        return {"type": "array", "items": {"type": "string"}}
    if descriptor.type is FieldType.MULTI_TREE_SELECT:
        items: Dict[str, Any] = {"type": "string"}
        if allowed is not None:
            items["enum"] = sorted(allowed)
        return {"type": "array", "items": items}
    if descriptor.type is FieldType.DATE:
        return {"type": "string", "format": "date"}
    if descriptor.type is FieldType.DATETIME:
        return {"type": "string", "format": "date-time"}
    if descriptor.type in (FieldType.SELECT, FieldType.TREE_SELECT) and allowed is not None:
        return {"enum": sorted(allowed)}

    schema: Dict[str, Any] = {"type": "string"}
    if descriptor.max_length is not None:
        schema["maxLength"] = descriptor.max_length
    return schema


def build_submit_schema(fields: Iterable[Any]) -> Dict[str, Any]:
    """Derive the JSON Schema a submit payload must satisfy.

    ``fields`` yields ``(descriptor, state)`` pairs for the visible fields of the
    form. Required-ness and option filters come from the live state, so the
    schema reflects whatever the core workflow decided last.
    """
    properties: Dict[str, Any] = {}
    required: List[str] = []
    for descriptor, state in fields:
        properties[descriptor.name] = _field_schema(descriptor, state)
        if state.required:
            required.append(descriptor.name)
    return {
        "type": "object",
        "properties": properties,
        "required": required,
        "additionalProperties": False,
    }


__all__ = [
    "ValidationEngine",
    "ValidationResult",
    "build_submit_schema",
]
