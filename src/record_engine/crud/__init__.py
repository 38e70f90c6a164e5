"""CRUD orchestration: collection and global operations plus the registry.

Usage:
    from record_engine.crud import CollectionRegistry, PaginatedResult
"""

from record_engine.crud.base import BaseCRUD
from record_engine.crud.collection import CollectionCRUD
from record_engine.crud.globals import GlobalCRUD
from record_engine.crud.models import DeleteResult, PaginatedResult
from record_engine.crud.registry import CollectionRegistry

__all__ = [
    "BaseCRUD",
    "CollectionCRUD",
    "GlobalCRUD",
    "CollectionRegistry",
    "PaginatedResult",
    "DeleteResult",
]
