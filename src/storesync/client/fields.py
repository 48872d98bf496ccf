"""Field-level conversions between the local store and the cloud.

This module provides:
- to_snake_case / to_camel_case: key conversion
- normalize_keys: recursive conversion of a record to the canonical
  snake_case shape shared by the local tables and the remote ones
- prepare_outbound: turns a local record into the payload a PostgREST
  table accepts
- encode_local_value: turns a value into what a SQLite column stores
"""

from __future__ import annotations

import json
import logging
import re
from datetime import datetime
from typing import Any

from storesync.core.tables import BOOLEAN_COLUMNS, JSON_COLUMNS, TableSpec
from storesync.core.timeutil import format_ts, is_uuid

logger = logging.getLogger(__name__)

# Keys whose snake_case form is not the mechanical conversion
FIELD_ALIASES: dict[str, str] = {
    "salesRep": "sales_rep_name",
}

# Keys never sent to the cloud (local-only relations)
LOCAL_ONLY_FIELDS = frozenset({"id", "payments"})

_CAMEL_BOUNDARY = re.compile(r"(?<!^)(?=[A-Z])")

_TRUE_VALUES = {True, 1, "1", "true", "True"}
_FALSE_VALUES = {False, 0, "0", "false", "False"}


class PayloadError(ValueError):
    """Raised when a record cannot be turned into a valid remote payload."""


def to_snake_case(key: str) -> str:
    if key in FIELD_ALIASES:
        return FIELD_ALIASES[key]
    if "_" in key or key.islower():
        return key
    return _CAMEL_BOUNDARY.sub("_", key).lower()


def to_camel_case(key: str) -> str:
    head, *rest = key.split("_")
    return head + "".join(part[:1].upper() + part[1:] for part in rest)


def normalize_keys(value: Any) -> Any:
    """Convert every mapping key to snake_case, recursing into containers."""
    if isinstance(value, dict):
        return {to_snake_case(str(k)): normalize_keys(v) for k, v in value.items()}
    if isinstance(value, list):
        return [normalize_keys(item) for item in value]
    return value


def decode_json_column(value: Any) -> Any:
    """Decode a JSON column stored as text.

    Text that is not JSON (e.g. a free-form note) is returned unchanged.
    """
    if not isinstance(value, str):
        return value
    text = value.strip()
    if not text or text[0] not in "[{":
        return value
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        logger.debug("Column value looks like JSON but does not parse, sent as text")
        return value


def coerce_bool(value: Any) -> bool | None:
    """Coerce an integer-like flag to a boolean."""
    if value is None or value == "":
        return None
    if isinstance(value, (dict, list)):
        return bool(value)
    if value in _TRUE_VALUES:
        return True
    if value in _FALSE_VALUES:
        return False
    return bool(value)


def encode_local_value(column: str, value: Any) -> Any:
    """Encode a value for storage in a SQLite column."""
    if isinstance(value, bool):
        return int(value)
    if column in BOOLEAN_COLUMNS:
        flag = coerce_bool(value)
        return None if flag is None else int(flag)
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    if isinstance(value, datetime):
        return format_ts(value)
    return value


def prepare_outbound(spec: TableSpec, record: dict[str, Any], now: datetime) -> dict[str, Any]:
    """Build the remote payload of a local record.

    Foreign keys must already be translated to remote ids.

    Args:
        spec: Table the record belongs to.
        record: Local record, in snake_case or camelCase.
        now: Timestamp stamped into updated_at where the table has one.

    Returns:
        Payload restricted to the remote columns, without the id.

    Raises:
        PayloadError: If a required field is missing or a foreign key is
            not a remote id.
    """
    data = normalize_keys(record)
    allowed = spec.remote_columns
    payload: dict[str, Any] = {}

    for key, value in data.items():
        if key in LOCAL_ONLY_FIELDS or key not in allowed:
            continue
        if key in JSON_COLUMNS:
            value = decode_json_column(value)
        elif key in BOOLEAN_COLUMNS:
            value = coerce_bool(value)
        elif isinstance(value, (dict, list)):
            logger.debug("Dropping nested value of %s.%s", spec.name, key)
            continue
        payload[key] = value

    for column, default in spec.defaults.items():
        if payload.get(column) in (None, ""):
            payload[column] = default() if callable(default) else default

    missing = [name for name in spec.required_fields if payload.get(name) in (None, "")]
    if missing:
        raise PayloadError(
            f"{spec.name} record missing required field(s): {', '.join(missing)}"
        )

    for fk in spec.foreign_keys:
        value = payload.get(fk.column)
        if value in (None, ""):
            if fk.required:
                raise PayloadError(f"{spec.name}.{fk.column} is required")
            if fk.column in payload:
                payload[fk.column] = None
            continue
        if not is_uuid(value):
            raise PayloadError(
                f"{spec.name}.{fk.column} is not a remote id: {value!r}"
            )

    if spec.has_updated_at:
        payload["updated_at"] = format_ts(now)
    else:
        payload.pop("updated_at", None)

    return payload
