"""
Versioning core: diffs, the versioned-entity base, blocks, documents and
the external-data cache.

Modules are imported directly (``from wikidb.wiki_engine.vcs.document import
WikiDocument``); this package initializer stays empty so request models can
import the diff primitives without pulling in the entities.
"""
