"""
Wiki Engine - append-only version control for wiki documents and blocks.

This package implements the versioning layer of a collaborative wiki on top
of a sorted key-value table (DynamoDB) and a relational store (SQLite):
- Droplets: time-sortable, checksummed identifiers used as ids and versions
- Documents and Blocks as immutable version items plus a "latest" pointer
- Per-attribute diffs tagged with audit actions (C/U/D/-)
- An external-data cache with per-field TTLs sourced from collection aggregates

Architecture:
    ┌─────────────┐     ┌─────────────┐     ┌─────────────────┐
    │   Request   │────▶│ WikiEngine  │────▶│  WikiDocument   │
    │  (pydantic) │     │  (facade)   │     │  (diff + build) │
    └─────────────┘     └─────────────┘     └────────┬────────┘
                                                     │
                        ┌────────────────────────────┼────────────────┐
                        │                            │                │
                        ▼                            ▼                ▼
                   ┌──────────┐             ┌──────────────┐   ┌────────────┐
                   │WikiBlock │             │ External-Data│   │  Droplet   │
                   │ (blocks) │             │    Cache     │   │ generator  │
                   └────┬─────┘             └──────┬───────┘   └────────────┘
                        │                          │
                        ▼                          ▼
                   ┌──────────┐             ┌──────────────┐
                   │ WikiTable│             │  Relational  │
                   │ (Dynamo) │             │   (SQLite)   │
                   └──────────┘             └──────────────┘

Invariants:
    - Version items are written once and never mutated
    - The latest pointer is written after its version item, never before
    - Droplet order equals creation order
    - KeyInfo names are immutable for the life of a block

How to change safely:
    - Key formats are persisted; never change them without a migration
    - Raw attribute names are persisted; add new ones, never rename
    - Bump the item schema number when the raw layout changes
"""

from ._version import __version__

__all__ = ["__version__"]
