"""
Storage Module

Attribute record loading from Redis through a bounded local cache.
"""

from .attribute_loader import (
    AttributeCache,
    AttributeLoader,
    LoadResult,
    parse_flat_record,
    parse_hash_record,
)

__all__ = [
    "AttributeCache",
    "AttributeLoader",
    "LoadResult",
    "parse_flat_record",
    "parse_hash_record"
]
