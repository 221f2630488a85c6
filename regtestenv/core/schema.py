"""
Base model for records that live on disk.

Archive and profile files use camelCase keys; Python code uses snake_case
attributes. Every persisted model derives from :class:`WireModel` so the
mapping is applied in one place.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class WireModel(BaseModel):
    """Pydantic model serialized with camelCase aliases."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
    )

    def to_wire(self) -> dict[str, Any]:
        """Dump to the on-disk dict shape (aliases, no ``None`` values)."""
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


class FrozenWireModel(WireModel):
    """Immutable variant for records written once (manifests, exports)."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
    )
