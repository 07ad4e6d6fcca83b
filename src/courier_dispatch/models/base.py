"""Shared base for documents persisted in the store."""

from typing import Any

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class DocumentModel(BaseModel):
    """Model stored with camelCase keys and used with snake_case attributes."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )

    def to_document(self, exclude_none: bool = False) -> dict[str, Any]:
        """Serialize to the stored (camelCase, JSON-safe) representation."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=exclude_none)
