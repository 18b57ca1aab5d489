"""
Unit tests for the wiki table key schema.
"""

import pytest

from wikidb.wiki_engine import keys
from wikidb.wiki_engine.errors import InvalidKeyError

DOC = "10274913512345482100012"
VERSION = "10274913512399482100025"
BLOCK = "10274913512346482100023"


class TestKeyBuilders:
    """Tests for key builders."""

    def test_document_keys(self):
        """Document keys share one partition."""
        assert keys.document_pk(DOC) == f"Document::{DOC}"
        assert keys.document_sk(VERSION) == f"Document::v_{VERSION}"
        assert keys.document_sk(keys.LATEST) == "Document::v_latest"

    def test_block_keys(self):
        """Block sort keys lead with the document version."""
        assert keys.block_sk(BLOCK, VERSION) == f"Block::v_{VERSION}::{BLOCK}"
        assert keys.block_gsi_pk(DOC) == f"BlockHistory::{DOC}"
        assert keys.block_gsi_sk(BLOCK, VERSION) == f"Block::{BLOCK}::v_{VERSION}"

    def test_version_prefix_excludes_latest(self):
        """Version prefix never matches the latest pointer."""
        prefix = keys.document_version_prefix()
        assert keys.document_sk(VERSION).startswith(prefix)
        assert not keys.document_sk(keys.LATEST).startswith(prefix)

    def test_history_prefix_excludes_latest(self):
        """Block history prefix never matches the latest pointer."""
        prefix = keys.block_history_prefix(BLOCK)
        assert keys.block_gsi_sk(BLOCK, VERSION).startswith(prefix)
        assert not keys.block_gsi_sk(BLOCK, keys.LATEST).startswith(prefix)

    def test_block_range_bounds(self):
        """Range covers every block written between two document versions."""
        start, end = keys.block_range(DOC, VERSION)

        inside = [keys.block_sk(BLOCK, DOC), keys.block_sk(BLOCK, VERSION)]
        outside = [
            keys.block_sk(BLOCK, keys.LATEST),
            keys.block_sk(BLOCK, "10274913512400482100010"),
            keys.document_sk(VERSION),
        ]

        assert all(start <= sk <= end for sk in inside)
        assert not any(start <= sk <= end for sk in outside)


class TestKeyParsers:
    """Tests for key parsers."""

    def test_parse_document_keys(self):
        """Document keys parse back to id and version."""
        assert keys.parse_document_pk(keys.document_pk(DOC)) == DOC
        assert keys.parse_document_sk(keys.document_sk(VERSION)) == VERSION
        assert keys.parse_document_sk(keys.document_sk(keys.LATEST)) == keys.LATEST

    def test_parse_block_sk(self):
        """Block sort key parses into block id and document version."""
        parsed = keys.parse_block_sk(keys.block_sk(BLOCK, VERSION))
        assert parsed == keys.BlockSortKey(block_id=BLOCK, document_version=VERSION)

    def test_parse_block_gsi(self):
        """Block history keys parse into ids and version."""
        assert keys.parse_block_gsi_pk(keys.block_gsi_pk(DOC)) == DOC
        parsed = keys.parse_block_gsi_sk(keys.block_gsi_sk(BLOCK, VERSION))
        assert parsed == keys.BlockGsiSortKey(block_id=BLOCK, version=VERSION)

    @pytest.mark.parametrize(
        "parser,value",
        [
            (keys.parse_document_pk, "Doc::123"),
            (keys.parse_document_pk, None),
            (keys.parse_document_sk, "Document::v_abc"),
            (keys.parse_block_sk, f"Block::{BLOCK}"),
            (keys.parse_block_gsi_sk, "Block::v_1::2"),
        ],
    )
    def test_malformed_keys(self, parser, value):
        """Malformed keys raise InvalidKeyError."""
        with pytest.raises(InvalidKeyError):
            parser(value)
