"""
Decoration Module

The attribute-decoration pipeline: tag dictionary operations, join key
extraction, keep/required policies and the orchestrating decorator.
"""

from .decorator import DecorationState, DecorationStats, TileDecorator, decode_tile, encode_tile
from .join_keys import extract_join_keys
from .property_stages import PropertyStagePipeline
from .tag_codec import LayerDictionary, compact, feature_properties

__all__ = [
    "TileDecorator",
    "DecorationState",
    "DecorationStats",
    "decode_tile",
    "encode_tile",
    "extract_join_keys",
    "PropertyStagePipeline",
    "LayerDictionary",
    "compact",
    "feature_properties"
]
