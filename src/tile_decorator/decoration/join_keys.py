"""Join key extraction from a decoded layer."""

import math
from typing import Any, List, Optional

from .tag_codec import iter_tag_pairs, key_index, value_of


def join_value_string(value: Any) -> Optional[str]:
    """
    Stringify a join value the way the attribute store keys are written:
    integral numbers lose their fractional part and booleans are lowercase.
    """
    if value is None:
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and math.isfinite(value) and value.is_integer():
        return str(int(value))
    return str(value)


def extract_join_keys(layer, key_name: str) -> List[Optional[str]]:
    """
    One join value per feature, in feature order.

    Features without the join key get ``None``; the loader never queries
    those.
    """
    key_tag = key_index(layer, key_name)
    if key_tag is None:
        return [None] * len(layer.features)

    join_keys = []
    for feature in layer.features:
        join_value = None
        for tag, value_tag in iter_tag_pairs(feature):
            if tag == key_tag:
                join_value = join_value_string(value_of(layer.values[value_tag]))
                break
        join_keys.append(join_value)
    return join_keys
