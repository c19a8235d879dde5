from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any

from .models import ReportConfiguration

DATE_TAG = "Date"


class DecodeError(ValueError):
    """Raised when stored text cannot be turned back into a configuration."""


def encode_value(value: Any) -> Any:
    if isinstance(value, datetime):
        return {"__type": DATE_TAG, "value": format_timestamp(value)}
    if isinstance(value, dict):
        return {key: encode_value(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [encode_value(item) for item in value]
    return value


def _revive(payload: dict[str, Any]) -> Any:
    if payload.get("__type") == DATE_TAG and "value" in payload:
        return parse_timestamp(str(payload["value"]))
    return payload


def format_timestamp(value: datetime) -> str:
    aware = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    return aware.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def parse_timestamp(text: str) -> datetime:
    parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def dumps(payload: Any, *, indent: int | None = None) -> str:
    return json.dumps(encode_value(payload), indent=indent, ensure_ascii=False)


def loads(text: str) -> Any:
    return json.loads(text, object_hook=_revive)


def serialize_configuration(configuration: ReportConfiguration) -> str:
    return dumps(configuration.to_dict())


def deserialize_configuration(text: str) -> ReportConfiguration:
    try:
        return ReportConfiguration.from_dict(loads(text))
    except (ValueError, KeyError, TypeError) as exc:
        raise DecodeError(f"could not deserialize configuration: {exc}") from exc
