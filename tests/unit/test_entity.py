"""
Unit tests for the versioned entity state machine.
"""

from dataclasses import dataclass

import pytest

from wikidb.wiki_engine.errors import IdMismatchError, NotFoundError, NotLoadedError, NotSelectedError
from wikidb.wiki_engine.vcs.entity import VersionedEntity, VersionToken


@dataclass
class NoteItem:
    id: str
    version: str
    text: str = ""
    is_latest: bool = False


class Note(VersionedEntity[NoteItem, dict]):
    """Smallest possible entity: items live in a dict instead of a table."""

    kind = "note"

    def __init__(self, note_id, stored=None):
        super().__init__(note_id)
        self.stored = stored or {}

    def to_item(self, raw):
        return NoteItem(raw["id"], raw["version"], raw["text"])

    def to_raw_item(self, item, latest=False):
        return {"id": item.id, "version": item.version, "text": item.text, "latest": latest}

    async def load_item(self, version, consistent=False):
        try:
            raw = self.stored[version]
        except KeyError:
            raise NotFoundError(f"note version {version} not found")
        return self.set_item(self.to_item(raw))

    def build(self, version=VersionToken.SELECTED):
        item = self.get_item(version)
        return self.set_build(item.version, {"id": item.id, "text": item.text})


class TestVersionResolution:
    """Tests for version tokens."""

    def test_latest_before_load(self):
        """LATEST before anything is loaded raises NotLoadedError."""
        with pytest.raises(NotLoadedError):
            Note("n1").resolve_version(VersionToken.LATEST)

    def test_selected_before_select(self):
        """SELECTED before any selection raises NotSelectedError."""
        with pytest.raises(NotSelectedError):
            Note("n1").get_item()

    def test_concrete_version_passes_through(self):
        """Concrete versions resolve to themselves."""
        assert Note("n1").resolve_version("v9") == "v9"

    def test_has_version(self):
        """has_version never raises."""
        note = Note("n1")
        assert not note.has_version(VersionToken.LATEST)
        note.set_item(NoteItem("n1", "v1"))
        assert note.has_version("v1")
        assert not note.has_version("v2")


class TestSetItem:
    """Tests for set_item and the cursors."""

    def test_selects_by_default(self):
        """set_item moves the selected cursor."""
        note = Note("n1")
        note.set_item(NoteItem("n1", "v1"))
        note.set_item(NoteItem("n1", "v2"), select=False)

        assert note.selected_version == "v1"
        assert note.get_item().version == "v1"

    def test_single_latest_item(self):
        """A new latest item clears the flag on the previous one."""
        note = Note("n1")
        first = note.set_item(NoteItem("n1", "v1", is_latest=True))
        second = note.set_item(NoteItem("n1", "v2"), is_latest=True)

        assert note.latest_version == "v2"
        assert not first.is_latest
        assert second.is_latest
        assert [item.version for item in note.item_map.values() if item.is_latest] == ["v2"]

    def test_wrong_id_rejected(self):
        """Items of another entity are rejected."""
        with pytest.raises(IdMismatchError) as exc_info:
            Note("n1").set_item(NoteItem("n2", "v1"))
        assert exc_info.value.expected == "n1"
        assert exc_info.value.actual == "n2"

    def test_missing_version(self):
        """get_item of an unloaded version raises NotFoundError."""
        note = Note("n1")
        note.set_item(NoteItem("n1", "v1"))
        with pytest.raises(NotFoundError):
            note.get_item("v2")

    def test_select(self):
        """select moves the cursor to a loaded version."""
        note = Note("n1")
        note.set_item(NoteItem("n1", "v1"))
        note.set_item(NoteItem("n1", "v2"))
        note.select("v1")
        assert note.selected_version == "v1"

    def test_instances_do_not_share_state(self):
        """Maps belong to one instance."""
        first, second = Note("n1"), Note("n1")
        first.set_item(NoteItem("n1", "v1"))
        assert second.item_map == {}


class TestLoadAndBuild:
    """Tests for subclass hooks."""

    @pytest.mark.asyncio
    async def test_load_then_build(self):
        """Loaded versions build and cache their public view."""
        note = Note("n1", {"v1": {"id": "n1", "version": "v1", "text": "hello"}})
        await note.load_item("v1")

        assert note.build() == {"id": "n1", "text": "hello"}
        assert note.build_map["v1"]["text"] == "hello"

    def test_build_of_other_entity_rejected(self):
        """set_build checks the build id."""
        with pytest.raises(IdMismatchError):
            Note("n1").set_build("v1", {"id": "n2"})
