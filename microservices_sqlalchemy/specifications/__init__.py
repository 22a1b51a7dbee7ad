"""
Query specifications consumed by repositories.
"""

from .base import QuerySpecification, SortKey, Specification, root_entity

__all__ = ["QuerySpecification", "SortKey", "Specification", "root_entity"]
