"""
Key schema of the wiki table.

Every wiki record lives in one DynamoDB table with a composite primary key
and one global secondary index for block history:

    Document version   WikiPK = Document::{documentId}
                       WikiSK = Document::v_{version | latest}
    Block version      WikiPK = Document::{documentId}
                       WikiSK = Block::v_{documentVersion | latest}::{blockId}
                       WikiGSIPK = BlockHistory::{documentId}
                       WikiGSISK = Block::{blockId}::v_{version | latest}

Invariants:
    - Key strings are bit-exact; existing data depends on them
    - Concrete versions are Droplets, so they sort below "latest"
    - A block's primary sort key is ordered by document version, which makes
      "all blocks written between two document versions" one range query

How to change safely:
    - Never change a format; add a new key family instead
    - Keep parsers and builders in this module only
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from .errors import InvalidKeyError

PK_ATTR = "WikiPK"
SK_ATTR = "WikiSK"
GSI_PK_ATTR = "WikiGSIPK"
GSI_SK_ATTR = "WikiGSISK"

LATEST = "latest"

# Droplets start with "1"; prefixing with it skips the latest pointer in range scans
VERSION_PREFIX = "1"

# Sorts after every digit, closes inclusive block ranges
RANGE_END = "~"

_DOCUMENT_PK = re.compile(r"^Document::(?P<id>\d+)$")
_DOCUMENT_SK = re.compile(r"^Document::v_(?P<version>\d+|latest)$")
_BLOCK_SK = re.compile(r"^Block::v_(?P<document_version>\d+|latest)::(?P<id>\d+)$")
_BLOCK_GSI_PK = re.compile(r"^BlockHistory::(?P<id>\d+)$")
_BLOCK_GSI_SK = re.compile(r"^Block::(?P<id>\d+)::v_(?P<version>\d+|latest)$")


def document_pk(document_id: str) -> str:
    return f"Document::{document_id}"


def document_sk(version: str) -> str:
    return f"Document::v_{version}"


def document_version_prefix() -> str:
    """Sort-key prefix matching every concrete document version."""
    return f"Document::v_{VERSION_PREFIX}"


def block_sk(block_id: str, document_version: str) -> str:
    return f"Block::v_{document_version}::{block_id}"


def block_latest_prefix() -> str:
    """Sort-key prefix matching every block latest pointer of a document."""
    return f"Block::v_{LATEST}::"


def block_range(start: str, end: str) -> tuple[str, str]:
    """Inclusive sort-key bounds of block versions written between two document versions."""
    return f"Block::v_{start}::", f"Block::v_{end}::{RANGE_END}"


def block_gsi_pk(document_id: str) -> str:
    return f"BlockHistory::{document_id}"


def block_gsi_sk(block_id: str, version: str) -> str:
    return f"Block::{block_id}::v_{version}"


def block_history_prefix(block_id: str) -> str:
    """GSI sort-key prefix matching every concrete version of one block."""
    return f"Block::{block_id}::v_{VERSION_PREFIX}"


@dataclass(frozen=True)
class BlockSortKey:
    """Parsed block primary sort key."""

    block_id: str
    document_version: str


@dataclass(frozen=True)
class BlockGsiSortKey:
    """Parsed block GSI sort key."""

    block_id: str
    version: str


def _match(pattern: re.Pattern[str], value: object, kind: str) -> re.Match[str]:
    match = pattern.match(value) if isinstance(value, str) else None
    if match is None:
        raise InvalidKeyError(
            f"Invalid {kind}: {value!r}",
            details={"kind": kind, "value": value},
        )
    return match


def parse_document_pk(value: object) -> str:
    """Return the document id of a partition key.

    Raises:
        InvalidKeyError: If the key does not match the document format
    """
    return _match(_DOCUMENT_PK, value, "document partition key")["id"]


def parse_document_sk(value: object) -> str:
    """Return the version (or "latest") of a document sort key."""
    return _match(_DOCUMENT_SK, value, "document sort key")["version"]


def parse_block_sk(value: object) -> BlockSortKey:
    match = _match(_BLOCK_SK, value, "block sort key")
    return BlockSortKey(block_id=match["id"], document_version=match["document_version"])


def parse_block_gsi_pk(value: object) -> str:
    return _match(_BLOCK_GSI_PK, value, "block history key")["id"]


def parse_block_gsi_sk(value: object) -> BlockGsiSortKey:
    match = _match(_BLOCK_GSI_SK, value, "block history sort key")
    return BlockGsiSortKey(block_id=match["id"], version=match["version"])
