"""Relation loading for ``with`` trees and nested relation writes."""

from record_engine.relations.mutations import RelationMutator, separate_nested
from record_engine.relations.resolver import RelationResolver, normalize_with_options

__all__ = ["RelationResolver", "RelationMutator", "normalize_with_options", "separate_nested"]
