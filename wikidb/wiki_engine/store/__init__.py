"""
Key-value table abstraction for the wiki engine.

Provides the WikiTable protocol with a DynamoDB backend for production and
an in-memory backend for tests, plus the chunked batch-write utility.
"""

from .base import QueryPage, WikiTable, create_wiki_table, query_all
from .batch import BatchWriteResult, batch_write
from .memory import InMemoryWikiTable

__all__ = [
    "WikiTable",
    "QueryPage",
    "query_all",
    "create_wiki_table",
    "batch_write",
    "BatchWriteResult",
    "InMemoryWikiTable",
]
