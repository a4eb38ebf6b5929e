"""Typed custom field values for CRM records.

Custom fields are a mapping from a short key to a tagged scalar:

    {"renewal": {"type": "date", "value": "2026-03-01"},
     "seats": {"type": "number", "value": 40}}

Clients may also send bare JSON scalars; normalize_custom_fields() tags them
at the boundary (bool -> boolean, int/float -> number, str -> string). Lists,
nested objects without a valid tag, and nulls are rejected, so what is stored
and serialized is always the tagged form.
"""

from __future__ import annotations

from datetime import date
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field, StrictBool, StrictFloat, StrictInt, StrictStr

MAX_CUSTOM_FIELD_KEY_LENGTH = 64
MAX_CUSTOM_FIELDS = 50


class StringFieldValue(BaseModel):
    type: Literal["string"] = "string"
    value: StrictStr = Field(max_length=2000)


class NumberFieldValue(BaseModel):
    type: Literal["number"] = "number"
    value: StrictInt | StrictFloat


class BooleanFieldValue(BaseModel):
    type: Literal["boolean"] = "boolean"
    value: StrictBool


class DateFieldValue(BaseModel):
    type: Literal["date"] = "date"
    value: date


CustomFieldValue = Annotated[
    Union[StringFieldValue, NumberFieldValue, BooleanFieldValue, DateFieldValue],
    Field(discriminator="type"),
]

CustomFields = dict[str, CustomFieldValue]


def _tag_scalar(key: str, raw: Any) -> Any:
    """Wrap a bare scalar in its tagged form; pass tagged values through."""
    if isinstance(raw, BaseModel):
        return raw
    if isinstance(raw, dict):
        if "type" not in raw:
            raise ValueError(f"Custom field '{key}' must be a scalar or a tagged value")
        return raw
    # bool is a subclass of int, check it first
    if isinstance(raw, bool):
        return {"type": "boolean", "value": raw}
    if isinstance(raw, (int, float)):
        return {"type": "number", "value": raw}
    if isinstance(raw, str):
        return {"type": "string", "value": raw}
    if isinstance(raw, date):
        return {"type": "date", "value": raw}
    kind = "null" if raw is None else type(raw).__name__
    raise ValueError(f"Custom field '{key}' has unsupported value type: {kind}")


def normalize_custom_fields(raw: Any) -> Any:
    """Pydantic before-validator for custom field mappings.

    Returns the mapping with every value in tagged form; the discriminated
    union then validates each value.
    """
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ValueError("custom_fields must be an object")
    if len(raw) > MAX_CUSTOM_FIELDS:
        raise ValueError(f"At most {MAX_CUSTOM_FIELDS} custom fields are allowed")

    normalized: dict[str, Any] = {}
    for key, value in raw.items():
        if not isinstance(key, str) or not key.strip():
            raise ValueError("Custom field keys must be non-empty strings")
        if len(key) > MAX_CUSTOM_FIELD_KEY_LENGTH:
            raise ValueError(
                f"Custom field key '{key[:20]}...' exceeds {MAX_CUSTOM_FIELD_KEY_LENGTH} characters"
            )
        normalized[key.strip()] = _tag_scalar(key, value)
    return normalized
