"""
Per-attribute diffing with audit actions.

Every attribute of a document or block is compared with one pure function of
the shape ``compare_x(requested, current) -> Compared(data, action)``. The
result carries the value to persist and the audit action to record:

    C  create     - value appears for the first time
    U  update     - value changed
    D  delete     - value removed
    -  no change  - value kept as is

``UNSET`` is the "no instruction" marker and differs from ``None``: an
omitted field keeps the current value, while an explicit ``None`` may delete
it (block data, external maps).

Child block lists are compared structurally. Each surviving child keeps its
own action and also records whether its relative order changed
("transposed"); the raw encoding is two characters, action letter followed by
``T`` or ``-`` (e.g. ``UT`` updated and moved, ``-T`` moved only).

Invariants:
    - Functions here never touch storage and never mutate their inputs
    - KeyInfo names are immutable; any change raises ValidationError
    - Equality is deep value equality
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Generic, Iterable, Iterator, Mapping, TypeVar

from ..errors import ValidationError

T = TypeVar("T")


class _Unset:
    """Marker type for "no instruction given"."""

    _instance: _Unset | None = None

    def __new__(cls) -> _Unset:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "UNSET"

    def __bool__(self) -> bool:
        return False


UNSET: Any = _Unset()


class AuditAction(str, Enum):
    """Audit action recorded per attribute, per block and per document."""

    CREATE = "C"
    UPDATE = "U"
    DELETE = "D"
    NO_CHANGE = "-"


@dataclass(frozen=True)
class Compared(Generic[T]):
    """Outcome of one attribute comparison.

    Attributes:
        data: Value to persist in the new version
        action: AuditAction, or a per-key mapping of actions for maps and sets
    """

    data: T
    action: Any


@dataclass(frozen=True)
class KeyInfo:
    """Key-info descriptor of a block. ``name`` never changes once set."""

    name: str
    label: str | None = None

    def to_raw(self) -> dict[str, Any]:
        raw: dict[str, Any] = {"Name": self.name}
        if self.label is not None:
            raw["Label"] = self.label
        return raw

    @classmethod
    def from_raw(cls, raw: Mapping[str, Any] | None) -> KeyInfo | None:
        if not raw:
            return None
        return cls(name=raw["Name"], label=raw.get("Label"))


def has_changes(actions: Mapping[str, AuditAction] | None) -> bool:
    """True if a per-key action map records anything but NO_CHANGE."""
    return any(action != AuditAction.NO_CHANGE for action in (actions or {}).values())


def compare_value(requested: Any, current: Any) -> Compared[Any]:
    """Compare a plain attribute (type, title)."""
    if requested is UNSET or requested == current:
        return Compared(current, AuditAction.NO_CHANGE)
    return Compared(requested, AuditAction.UPDATE)


def compare_data(requested: Any, current: Any) -> Compared[Any]:
    """Compare block data; an explicit None deletes it."""
    if requested is UNSET:
        return Compared(current, AuditAction.NO_CHANGE)
    if requested is None:
        if current is None:
            return Compared(None, AuditAction.NO_CHANGE)
        return Compared(None, AuditAction.DELETE)
    if requested == current:
        return Compared(current, AuditAction.NO_CHANGE)
    return Compared(requested, AuditAction.UPDATE)


def compare_key_info(requested: KeyInfo | None, current: KeyInfo | None) -> Compared[KeyInfo | None]:
    """Compare key info; the returned action describes the label.

    Raises:
        ValidationError: If the requested name differs from the current one
    """
    if requested is UNSET:
        return Compared(current, AuditAction.NO_CHANGE)

    requested_name = requested.name if requested is not None else None
    current_name = current.name if current is not None else None
    if requested_name != current_name:
        raise ValidationError(
            "KeyInfo name attribute is immutable",
            code="KEYINFO_NAME_IMMUTABLE",
            details={"current": current_name, "requested": requested_name},
        )

    if requested is None or requested.label == current.label:
        return Compared(current, AuditAction.NO_CHANGE)
    if current.label is not None:
        return Compared(requested, AuditAction.UPDATE)
    return Compared(requested, AuditAction.CREATE)


def compare_ext(
    requested: Mapping[str, Any] | None,
    current: Mapping[str, Any] | None,
) -> Compared[dict[str, Any] | None]:
    """Three-way comparison of an external-field map.

    UNSET keeps every current key, None deletes every current key, and a
    mapping is compared key by key.

    Returns:
        Compared whose action is a mapping of field name to AuditAction
    """
    current = current or {}
    if requested is UNSET:
        return Compared(
            dict(current) if current else None,
            {key: AuditAction.NO_CHANGE for key in current},
        )
    if requested is None:
        return Compared(None, {key: AuditAction.DELETE for key in current})

    actions: dict[str, AuditAction] = {}
    for key, value in requested.items():
        if key not in current:
            actions[key] = AuditAction.CREATE
        elif current[key] == value:
            actions[key] = AuditAction.NO_CHANGE
        else:
            actions[key] = AuditAction.UPDATE
    for key in current:
        if key not in requested:
            actions[key] = AuditAction.DELETE
    return Compared(dict(requested), actions)


def compare_tags(requested: Iterable[str] | None, current: Iterable[str] | None) -> Compared[set[str]]:
    """Compare tag sets; the action maps each tag to its AuditAction."""
    current_set = set(current or ())
    if requested is UNSET:
        return Compared(current_set, {tag: AuditAction.NO_CHANGE for tag in current_set})

    requested_set = set(requested or ())
    actions = {tag: AuditAction.NO_CHANGE for tag in requested_set & current_set}
    actions.update({tag: AuditAction.CREATE for tag in requested_set - current_set})
    actions.update({tag: AuditAction.DELETE for tag in current_set - requested_set})
    return Compared(requested_set, actions)


# ---------------------------------------------------------------------------
# Structural diff of child block lists
# ---------------------------------------------------------------------------

RAW_STRUCTURE_DIFFS = frozenset({"C-", "U-", "UT", "-T", "D-", "--"})


@dataclass(frozen=True)
class StructureDiff:
    """Action of a child reference plus whether its relative order changed."""

    action: AuditAction = AuditAction.NO_CHANGE
    transposed: bool = False

    @property
    def moved(self) -> bool:
        return self.transposed

    @property
    def changed(self) -> bool:
        return self.action != AuditAction.NO_CHANGE or self.transposed

    def to_raw(self) -> str:
        return self.action.value + ("T" if self.transposed else "-")

    @classmethod
    def from_raw(cls, raw: str | None) -> StructureDiff:
        if raw is None:
            return cls()
        if raw not in RAW_STRUCTURE_DIFFS:
            raise ValidationError(f"Invalid structure diff: {raw!r}", details={"raw": raw})
        return cls(action=AuditAction(raw[0]), transposed=raw[1] == "T")


@dataclass
class BlockRef:
    """Reference from a document (or parent block) to one block version."""

    id: str
    version: str
    diff: StructureDiff = field(default_factory=StructureDiff)
    children: list[BlockRef] = field(default_factory=list)

    def to_raw(self) -> dict[str, Any]:
        raw: dict[str, Any] = {"Id": self.id, "Version": self.version, "Diff": self.diff.to_raw()}
        if self.children:
            raw["Children"] = [child.to_raw() for child in self.children]
        return raw

    @classmethod
    def from_raw(cls, raw: Mapping[str, Any]) -> BlockRef:
        return cls(
            id=raw["Id"],
            version=raw["Version"],
            diff=StructureDiff.from_raw(raw.get("Diff")),
            children=[cls.from_raw(child) for child in raw.get("Children") or []],
        )


@dataclass
class RequestedNode:
    """Requested position of one block in a child tree."""

    id: str
    children: list[RequestedNode] = field(default_factory=list)


@dataclass
class StructureResult:
    """Outcome of a structural comparison.

    Attributes:
        refs: New reference tree; versions of new refs are empty until filled
        diff: Summary over the whole tree
        deleted: Current refs (any depth) absent from the new tree
    """

    refs: list[BlockRef]
    diff: StructureDiff
    deleted: list[BlockRef]


def walk_refs(refs: Iterable[BlockRef]) -> Iterator[BlockRef]:
    """Depth-first iteration over a reference tree."""
    for ref in refs:
        yield ref
        yield from walk_refs(ref.children)


def walk_nodes(nodes: Iterable[RequestedNode]) -> Iterator[RequestedNode]:
    for node in nodes:
        yield node
        yield from walk_nodes(node.children)


def summarize_structure(refs: Iterable[BlockRef], deleted: Iterable[BlockRef] = ()) -> StructureDiff:
    """Summary diff of a tree: UPDATE if any child changed, transposed if any moved."""
    refs = list(walk_refs(refs))
    changed = any(ref.diff.action != AuditAction.NO_CHANGE for ref in refs) or any(True for _ in deleted)
    return StructureDiff(
        action=AuditAction.UPDATE if changed else AuditAction.NO_CHANGE,
        transposed=any(ref.diff.transposed for ref in refs),
    )


def carry_refs(refs: Iterable[BlockRef]) -> list[BlockRef]:
    """Copy a tree into a new version with every diff reset to NO_CHANGE."""
    return [BlockRef(ref.id, ref.version, StructureDiff(), carry_refs(ref.children)) for ref in refs]


def _compare_level(
    requested: list[RequestedNode],
    current: list[BlockRef],
    known: Mapping[str, BlockRef],
) -> list[BlockRef]:
    current_by_id = {ref.id: ref for ref in current}
    requested_ids = {node.id for node in requested}

    # Relative order among surviving siblings decides "transposed"
    shared_current = [ref.id for ref in current if ref.id in requested_ids]
    shared_requested = [node.id for node in requested if node.id in current_by_id]
    old_position = {ref_id: i for i, ref_id in enumerate(shared_current)}
    new_position = {ref_id: i for i, ref_id in enumerate(shared_requested)}

    refs = []
    for node in requested:
        old = current_by_id.get(node.id)
        if old is not None:
            transposed = old_position[node.id] != new_position[node.id]
            children = _compare_level(node.children, old.children, known)
            refs.append(BlockRef(node.id, old.version, StructureDiff(AuditAction.NO_CHANGE, transposed), children))
        elif node.id in known:
            # moved under another parent
            old = known[node.id]
            children = _compare_level(node.children, old.children, known)
            refs.append(BlockRef(node.id, old.version, StructureDiff(AuditAction.NO_CHANGE, True), children))
        else:
            children = _compare_level(node.children, [], known)
            refs.append(BlockRef(node.id, "", StructureDiff(AuditAction.CREATE), children))
    return refs


def compare_structure(
    requested: list[RequestedNode] | None,
    current: list[BlockRef] | None,
) -> StructureResult:
    """Compare a requested child tree with the current reference tree.

    Args:
        requested: Requested tree of block ids, or UNSET to keep the current one
        current: Current reference tree

    Returns:
        StructureResult with new refs, summary diff and deleted refs

    Raises:
        ValidationError: If a block id appears twice in the requested tree
    """
    current = current or []
    if requested is UNSET:
        return StructureResult(carry_refs(current), StructureDiff(), [])

    requested = requested or []
    seen: set[str] = set()
    for node in walk_nodes(requested):
        if node.id in seen:
            raise ValidationError(f"Block {node.id} appears more than once", details={"block_id": node.id})
        seen.add(node.id)

    known = {ref.id: ref for ref in walk_refs(current)}
    refs = _compare_level(requested, current, known)
    deleted = [
        BlockRef(ref.id, ref.version, StructureDiff(AuditAction.DELETE))
        for ref in walk_refs(current)
        if ref.id not in seen
    ]
    return StructureResult(refs=refs, diff=summarize_structure(refs, deleted), deleted=deleted)
