"""Base model for wire messages.

Every wire model inherits from :class:`RelayBaseModel` which maps
camelCase keys (``callId``, ``requesterId``, ``showInLogs``) to
snake_case fields via ``alias_generator=to_camel``.
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class RelayBaseModel(BaseModel):
    """Frozen, camelCase-aliased base model."""

    model_config = ConfigDict(
        frozen=True,
        extra="ignore",
        populate_by_name=True,
        alias_generator=to_camel,
    )
