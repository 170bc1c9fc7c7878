"""
Tag Dictionary Codec

Operations over the shared key/value dictionaries and per-feature tag lists
of a decoded vector tile layer.

A feature's ``tags`` alternate key index and value index into the layer's
``keys`` and ``values``. Merged attributes are appended rather than
overwriting earlier pairs, so a feature can carry more than one pair for the
same key: readers fold the tag list in order and the last pair wins.
"""

import json
import math
from typing import Any, Dict, Iterable, List, Optional

from mapbox_vector_tile.Mapbox import vector_tile_pb2

INT64_MIN = -(2 ** 63)
INT64_MAX = 2 ** 63 - 1
UINT64_MAX = 2 ** 64 - 1

# Integral floats up to this magnitude are fingerprinted like ints
_EXACT_INT_LIMIT = 2 ** 53

# Order in which Value fields are inspected when reading a value back
_VALUE_FIELDS = (
    "string_value",
    "float_value",
    "double_value",
    "int_value",
    "uint_value",
    "sint_value",
    "bool_value",
)


def value_of(value: vector_tile_pb2.tile.value) -> Any:
    """Resolve a protobuf ``Value`` to its Python scalar."""
    for field_name in _VALUE_FIELDS:
        if value.HasField(field_name):
            return getattr(value, field_name)
    return None


def to_typed_value(value: Any) -> vector_tile_pb2.tile.value:
    """Build the protobuf ``Value`` a Python attribute value is stored as."""
    typed = vector_tile_pb2.tile.value()
    if isinstance(value, str):
        typed.string_value = value
    elif isinstance(value, bool):
        typed.bool_value = value
    elif isinstance(value, int):
        if 0 <= value <= INT64_MAX:
            typed.int_value = value
        elif INT64_MIN <= value < 0:
            typed.sint_value = value
        elif INT64_MAX < value <= UINT64_MAX:
            typed.uint_value = value
        else:
            typed.string_value = str(value)
    elif isinstance(value, float):
        typed.double_value = value
    else:
        typed.string_value = json.dumps(value, separators=(",", ":"))
    return typed


def _number_repr(value) -> str:
    if isinstance(value, float):
        if math.isfinite(value) and value.is_integer() and abs(value) < _EXACT_INT_LIMIT:
            return str(int(value))
        return repr(value)
    return str(value)


def typed_key(value: Any) -> str:
    """
    Fingerprint a value for dictionary deduplication.

    Strings, booleans, numbers and everything else are prefixed distinctly so
    that ``"3"`` and ``3`` never collide, while ``3`` and ``3.0`` do.
    """
    if isinstance(value, str):
        return "s:" + value
    if isinstance(value, bool):
        return "b:" + ("true" if value else "false")
    if isinstance(value, (int, float)):
        return "n:" + _number_repr(value)
    return "o:" + json.dumps(value, separators=(",", ":"), sort_keys=True)


def key_index(layer, name: str) -> Optional[int]:
    """Index of ``name`` in the layer's key dictionary, or None."""
    for index, key in enumerate(layer.keys):
        if key == name:
            return index
    return None


def iter_tag_pairs(feature) -> Iterable:
    tags = feature.tags
    for i in range(0, len(tags) - 1, 2):
        yield tags[i], tags[i + 1]


def feature_properties(layer, feature) -> Dict[str, Any]:
    """Property map of a feature; later pairs for the same key win."""
    properties = {}
    for key_tag, value_tag in iter_tag_pairs(feature):
        properties[layer.keys[key_tag]] = value_of(layer.values[value_tag])
    return properties


def _replace_tags(feature, tags: List[int]) -> None:
    del feature.tags[:]
    feature.tags.extend(tags)


class LayerDictionary:
    """
    Intern-or-reuse view over one layer's key and value dictionaries.

    Lookup tables are built once from the layer and kept in step with every
    append, so interning is constant time. The layer must not be modified
    behind this object's back while it is in use.
    """

    def __init__(self, layer):
        self.layer = layer
        self._keys: Dict[str, int] = {}
        self._values: Dict[str, int] = {}

        for index, key in enumerate(layer.keys):
            self._keys.setdefault(key, index)
        for index, value in enumerate(layer.values):
            self._values.setdefault(typed_key(value_of(value)), index)

    def key_index(self, name: str) -> Optional[int]:
        return self._keys.get(name)

    def intern_key(self, name: str) -> int:
        index = self._keys.get(name)
        if index is None:
            index = len(self.layer.keys)
            self.layer.keys.append(name)
            self._keys[name] = index
        return index

    def intern_value(self, value: Any) -> int:
        # Fingerprint the stored form so an object and an identical JSON
        # string share one dictionary entry.
        typed = to_typed_value(value)
        fingerprint = typed_key(value_of(typed))
        index = self._values.get(fingerprint)
        if index is None:
            index = len(self.layer.values)
            self.layer.values.add().CopyFrom(typed)
            self._values[fingerprint] = index
        return index

    def merge_record(self, feature, record: Dict[str, Any]) -> None:
        """Append one tag pair per record attribute to ``feature``."""
        for name, value in record.items():
            key_tag = self.intern_key(name)
            value_tag = self.intern_value(value)
            feature.tags.append(key_tag)
            feature.tags.append(value_tag)


def select_keys(layer, keep_names: Iterable[str]) -> None:
    """
    Keep only tag pairs whose key name is in ``keep_names``.

    Dictionaries are left as they are; ``compact`` drops dead entries.
    """
    keep = set(keep_names)
    kept_indices = {index for index, key in enumerate(layer.keys) if key in keep}

    for feature in layer.features:
        tags = []
        for key_tag, value_tag in iter_tag_pairs(feature):
            if key_tag in kept_indices:
                tags.append(key_tag)
                tags.append(value_tag)
        if len(tags) != len(feature.tags):
            _replace_tags(feature, tags)


def has_required_keys(feature, required_indices: set) -> bool:
    present = {key_tag for key_tag, _ in iter_tag_pairs(feature)}
    return required_indices <= present


def filter_features_missing_keys(layer, required_names: Iterable[str]) -> int:
    """
    Remove features lacking any of ``required_names``.

    Survivors keep their relative order.

    Returns:
        Number of features removed
    """
    required_names = list(required_names)
    if not required_names:
        return 0

    required_indices = set()
    for name in required_names:
        index = key_index(layer, name)
        if index is None:
            # Nobody can carry a key the dictionary doesn't know
            removed = len(layer.features)
            del layer.features[:]
            return removed
        required_indices.add(index)

    missing = [
        i for i, feature in enumerate(layer.features)
        if not has_required_keys(feature, required_indices)
    ]
    for i in reversed(missing):
        del layer.features[i]
    return len(missing)


def compact(layer) -> None:
    """
    Rebuild ``keys`` and ``values`` down to the entries referenced by at least
    one feature, keeping their relative order and remapping tags.

    Duplicate tag pairs within a feature are not collapsed.
    """
    used_keys = set()
    used_values = set()
    for feature in layer.features:
        for key_tag, value_tag in iter_tag_pairs(feature):
            used_keys.add(key_tag)
            used_values.add(value_tag)

    if len(used_keys) == len(layer.keys) and len(used_values) == len(layer.values):
        return

    key_map = {}
    keys = []
    for index, key in enumerate(layer.keys):
        if index in used_keys:
            key_map[index] = len(keys)
            keys.append(key)

    value_map = {}
    values = []
    for index, value in enumerate(layer.values):
        if index in used_values:
            value_map[index] = len(values)
            copy = vector_tile_pb2.tile.value()
            copy.CopyFrom(value)
            values.append(copy)

    for feature in layer.features:
        tags = []
        for key_tag, value_tag in iter_tag_pairs(feature):
            tags.append(key_map[key_tag])
            tags.append(value_map[value_tag])
        _replace_tags(feature, tags)

    del layer.keys[:]
    layer.keys.extend(keys)
    del layer.values[:]
    for value in values:
        layer.values.add().CopyFrom(value)
