"""The generic business record shared by every collection."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any, TypeVar

from pydantic import AliasChoices, ConfigDict, Field, field_validator, model_validator

from fleetsync.models._base import FleetBaseModel, UtcTimestamp, utcnow

R = TypeVar("R", bound="Record")

# Fields a patch may never change through ``with_changes``.
_IMMUTABLE_KEYS = frozenset({"id", "ownerId", "owner_id", "userId", "collection", "createdAt", "created_at"})


class Record(FleetBaseModel):
    """One business entity (truck, maintenance entry, part, ...).

    Business fields beyond the envelope are kept as pydantic extra fields,
    so they round-trip at the top level of the document unchanged.
    """

    model_config = ConfigDict(extra="allow")

    id: str
    owner_id: str = Field(
        validation_alias=AliasChoices("ownerId", "userId", "owner_id"),
        serialization_alias="ownerId",
    )
    collection: str
    created_at: UtcTimestamp = Field(default_factory=utcnow)
    updated_at: UtcTimestamp = Field(default_factory=utcnow)

    @field_validator("id", "owner_id", "collection")
    @classmethod
    def _non_empty(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("must be non-empty")
        return value

    @model_validator(mode="after")
    def _clamp_updated_at(self) -> Record:
        """Enforce ``updated_at >= created_at`` on records from any source."""
        if self.updated_at < self.created_at:
            object.__setattr__(self, "updated_at", self.created_at)
        return self

    @property
    def payload(self) -> dict[str, Any]:
        """Business fields outside the record envelope."""
        return dict(self.model_extra or {})

    def with_changes(self: R, changes: Mapping[str, Any], **envelope: Any) -> R:
        """Return a copy with *changes* applied to the business fields.

        Envelope fields (``id``, ``updated_at``...) may be replaced via
        keyword arguments; a patch cannot change identity fields.
        """
        doc = self.to_document()
        for key, value in changes.items():
            if key in _IMMUTABLE_KEYS:
                continue
            doc[key] = value
        fields = type(self).model_fields
        for name, value in envelope.items():
            info = fields[name]
            doc[info.serialization_alias or info.alias or name] = value
        return type(self).model_validate(doc)

    def as_type(self, model: type[R]) -> R:
        """Re-validate this record as a typed view such as :class:`Truck`."""
        return model.model_validate(self.to_document())
