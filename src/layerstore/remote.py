"""
Remote records: the name to content mapping.

A Remote names a fetchable artifact by URL and, once resolved, records the
content hash of its payload in the object store.
"""
from __future__ import annotations

import hashlib
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .errors import DecodeError
from .storage.base import RecordKind

__all__ = ["Remote", "sha256sum"]


def sha256sum(s: str) -> str:
    """Hex SHA-256 of a string's UTF-8 bytes."""
    return hashlib.sha256(s.encode("utf-8")).hexdigest()


class Remote(BaseModel):
    """
    A named reference to a fetchable artifact.

    Stored as JSON with the keys ``Name``, ``Mirrors``, ``ETag`` and ``File``.
    The identity key is derived from ``name`` only, so every Remote with the
    same name addresses the same slot in the remote store.
    """
    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    name: str = Field(..., alias="Name", min_length=1, description="URL naming the artifact")
    mirrors: List[str] = Field(default_factory=list, alias="Mirrors", description="Fetch URLs; only the first is used")
    etag: str = Field(default="", alias="ETag", description="Reserved, not sent with requests")
    file: str = Field(default="", alias="File", description="Content hash in the object store, empty until resolved")

    @field_validator("mirrors", mode="before")
    @classmethod
    def _null_mirrors(cls, v):
        # Records written with a nil slice carry "Mirrors": null
        return [] if v is None else v

    @classmethod
    def new(cls, name: str, mirrors: Optional[List[str]] = None) -> "Remote":
        """Create an unresolved Remote; the name doubles as the first mirror."""
        return cls(name=name, mirrors=list(mirrors) if mirrors else [name])

    @property
    def kind(self) -> RecordKind:
        return RecordKind.REMOTE

    @property
    def url(self) -> str:
        """URL the fetch pipeline requests."""
        return self.mirrors[0] if self.mirrors else self.name

    @property
    def resolved(self) -> bool:
        return bool(self.file)

    def key(self) -> str:
        return sha256sum(self.name)

    def marshal(self) -> bytes:
        return self.model_dump_json(by_alias=True).encode("utf-8")

    def unmarshal(self, data: bytes) -> "Remote":
        try:
            return Remote.model_validate_json(data)
        except ValidationError as e:
            raise DecodeError(f"invalid remote record: {e}") from e
