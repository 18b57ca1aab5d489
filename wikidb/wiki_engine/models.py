"""
Request models for document and block changes.

Incoming payloads are validated with pydantic before any diffing happens.
Update requests distinguish "field omitted" from "field given": omitted
fields read as UNSET through ``value()`` and keep their current value.

Invariants:
    - Key-info blocks always carry a keyInfo descriptor with a known name
    - Block data carries the keys its block type renders
    - Update requests never null out type, title, tags or block lists
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Mapping, TypeVar

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

from . import droplet
from .errors import ValidationError
from .vcs.diff import UNSET
from .vcs.ext import ExtField, KeyInfoName


class DocumentType(str, Enum):
    """Wiki document types."""

    COLLECTION = "collection#"
    NFT = "nft#"
    TEAM = "team#"
    PERSON = "person#"
    TERM = "term#"


class BlockType(str, Enum):
    """Wiki block types."""

    HEADER = "header"
    PARAGRAPH = "paragraph"
    LIST = "list"
    TABLE = "table"
    IMAGE = "image"
    WARNING = "warning"
    KEY_INFO = "keyinfo"


BLOCK_DATA_KEYS: dict[BlockType, tuple[str, ...]] = {
    BlockType.HEADER: ("text", "level"),
    BlockType.PARAGRAPH: ("text",),
    BlockType.LIST: ("style", "items"),
    BlockType.TABLE: ("content",),
    BlockType.IMAGE: ("file",),
    BlockType.WARNING: ("title", "message"),
    BlockType.KEY_INFO: (),
}

_KEY_INFO_NAMES = {name.value for name in KeyInfoName}


class _Request(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    def value(self, name: str) -> Any:
        """Field value, or UNSET when the field was not given."""
        return getattr(self, name) if name in self.model_fields_set else UNSET


class KeyInfoRequest(_Request):
    name: str = Field(min_length=1)
    label: str | None = None

    @field_validator("name")
    @classmethod
    def check_known_name(cls, value: str) -> str:
        if value not in _KEY_INFO_NAMES:
            raise ValueError(f"unknown key info name: {value}")
        return value


class BlockRequest(_Request):
    """Requested state of one block.

    ``id`` references an existing block; omit it to create a new block.
    """

    id: str | None = None
    type: BlockType
    data: dict[str, Any] | None = None
    key_info: KeyInfoRequest | None = Field(default=None, alias="keyInfo")
    external: list[ExtField] | None = None
    children: list[BlockRequest] = Field(default_factory=list)

    @field_validator("id")
    @classmethod
    def check_droplet_id(cls, value: str | None) -> str | None:
        if value is not None and not droplet.is_valid(value):
            raise ValueError("block id must be a valid droplet")
        return value

    @model_validator(mode="after")
    def check_shape(self) -> BlockRequest:
        if self.type == BlockType.KEY_INFO and self.key_info is None and "key_info" in self.model_fields_set:
            raise ValueError("keyinfo blocks must have keyInfo")
        if self.data is not None:
            missing = [key for key in BLOCK_DATA_KEYS[self.type] if key not in self.data]
            if missing:
                raise ValueError(f"{self.type.value} block data is missing {', '.join(missing)}")
        return self


def _dedupe_tags(tags: list[str] | None) -> list[str] | None:
    if tags is None:
        return None
    result: list[str] = []
    for tag in tags:
        tag = tag.strip()
        if not tag:
            raise ValueError("tags must not be empty")
        if tag not in result:
            result.append(tag)
    return result


def _check_key_info_blocks(blocks: list[BlockRequest] | None) -> None:
    for block in blocks or []:
        if block.key_info is None:
            raise ValueError("keyInfo blocks must have keyInfo")


class DocumentCreateRequest(_Request):
    """Payload of a new document."""

    type: DocumentType
    title: str = Field(min_length=1, max_length=200)
    key_info: list[BlockRequest] = Field(default_factory=list, alias="keyInfo")
    content: list[BlockRequest] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)
    collection_id: int | None = Field(default=None, alias="collectionId")
    audit_comment: str | None = Field(default=None, alias="auditComment")

    @field_validator("tags")
    @classmethod
    def normalize_tags(cls, value: list[str]) -> list[str]:
        return _dedupe_tags(value)

    @model_validator(mode="after")
    def check_blocks(self) -> DocumentCreateRequest:
        _check_key_info_blocks(self.key_info)
        return self


class DocumentUpdateRequest(_Request):
    """Payload of a document update; omitted fields keep their current value."""

    type: DocumentType | None = None
    title: str | None = Field(default=None, min_length=1, max_length=200)
    key_info: list[BlockRequest] | None = Field(default=None, alias="keyInfo")
    content: list[BlockRequest] | None = None
    tags: list[str] | None = None
    audit_comment: str | None = Field(default=None, alias="auditComment")

    @field_validator("tags")
    @classmethod
    def normalize_tags(cls, value: list[str] | None) -> list[str] | None:
        return _dedupe_tags(value)

    @model_validator(mode="after")
    def check_no_nulls(self) -> DocumentUpdateRequest:
        for name in ("type", "title", "key_info", "content", "tags"):
            if name in self.model_fields_set and getattr(self, name) is None:
                raise ValueError(f"{name} cannot be null")
        _check_key_info_blocks(self.key_info)
        return self


RequestT = TypeVar("RequestT", bound=BaseModel)


def parse_request(model: type[RequestT], payload: Mapping[str, Any] | RequestT) -> RequestT:
    """Validate a payload into a request model.

    Raises:
        ValidationError: With one message per pydantic error
    """
    if isinstance(payload, model):
        return payload
    try:
        return model.model_validate(payload)
    except PydanticValidationError as e:
        errors = [
            f"{'.'.join(str(part) for part in error['loc']) or 'request'}: {error['msg']}"
            for error in e.errors()
        ]
        raise ValidationError(
            f"Invalid {model.__name__}",
            code="INVALID_REQUEST",
            errors=errors,
        ) from e
