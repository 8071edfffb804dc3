"""Graph domain — Neo4j schema management and the relationship graph.

Exports are loaded lazily so the store components can import the shared
transaction helpers without pulling the whole graph package in.
"""

from __future__ import annotations

from importlib import import_module

__all__ = [
    "RelationshipGraph",
    "init_schema",
]


_EXPORT_TO_MODULE = {
    "RelationshipGraph": "memgarden.graph.relationships",
    "init_schema": "memgarden.graph.schema",
}


def __getattr__(name: str):
    module_name = _EXPORT_TO_MODULE.get(name)
    if module_name is None:
        raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
    module = import_module(module_name)
    return getattr(module, name)
