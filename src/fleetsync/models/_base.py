"""Base model and timestamp coercion for fleetsync models.

Every persisted model inherits from :class:`FleetBaseModel` which
provides ``alias_generator=to_camel`` so the JSON form stored locally and
exchanged with the remote store is camelCase while Python attributes stay
snake_case.

Timestamps arrive in several shapes (document-store timestamps serialized
as ISO-8601, epoch seconds, epoch milliseconds, naive datetimes from
older cache snapshots). :data:`UtcTimestamp` coerces all of them to
timezone-aware UTC datetimes so the recency rule compares like with like.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Annotated, Any

from pydantic import BaseModel, BeforeValidator, ConfigDict
from pydantic.alias_generators import to_camel

# Threshold to distinguish seconds from milliseconds.
_MS_THRESHOLD = 1_000_000_000_000


def utcnow() -> datetime:
    return datetime.now(UTC)


def parse_timestamp(value: Any) -> Any:
    """Convert an epoch (seconds **or** milliseconds), ISO string or datetime to UTC.

    Values of any other type are passed through for pydantic to reject.
    """
    if value is None:
        return value
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        ts = float(value)
        if ts >= _MS_THRESHOLD:
            ts /= 1000.0
        return datetime.fromtimestamp(ts, tz=UTC)
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        if text.lstrip("-").replace(".", "", 1).isdigit():
            return parse_timestamp(float(text))
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        return parse_timestamp(parsed)
    return value


UtcTimestamp = Annotated[datetime, BeforeValidator(parse_timestamp)]
"""Annotated type that coerces epoch numbers and ISO strings to UTC datetimes."""

OptionalUtcTimestamp = Annotated[datetime | None, BeforeValidator(parse_timestamp)]


class FleetBaseModel(BaseModel):
    """Base for persisted fleetsync models.

    Handles:
    * camelCase → snake_case via ``alias_generator=to_camel``
    * construction by field name as well as by alias
    """

    model_config = ConfigDict(
        frozen=True,
        extra="ignore",
        populate_by_name=True,
        alias_generator=to_camel,
    )

    def to_document(self) -> dict[str, Any]:
        """JSON-compatible camelCase form used for storage and the wire."""
        return self.model_dump(mode="json", by_alias=True)
