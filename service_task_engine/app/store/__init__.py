"""
Document store package.

A small document-oriented persistence contract (collections of JSON-like
documents addressed by id, simple filtered queries, compare-and-swap
updates and live query subscriptions) with two backends:

- memory: Process-local store for tests and single-node deployments.
- redis_store: Redis-backed store shared between engine replicas.
"""

from .base import DocumentStore, QueryFilter, OrderBy, MAX_IN_VALUES
from .memory import InMemoryDocumentStore

__all__ = [
    "DocumentStore",
    "QueryFilter",
    "OrderBy",
    "MAX_IN_VALUES",
    "InMemoryDocumentStore",
]
