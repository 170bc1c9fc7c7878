"""
Unit Tests for the Tag Dictionary Codec

Covers value fingerprinting, interning, append-only merging, key
projection, required-key filtering and dictionary compaction.
"""

import sys
import unittest
from pathlib import Path

sys.path.append(str(Path(__file__).parent.parent.parent / "src"))
sys.path.append(str(Path(__file__).parent))

from fakes import build_layer_tile, build_nyc_tile, layer_properties
from tile_decorator.decoration.tag_codec import (
    LayerDictionary,
    compact,
    feature_properties,
    filter_features_missing_keys,
    iter_tag_pairs,
    key_index,
    select_keys,
    to_typed_value,
    typed_key,
    value_of,
)


class TestTypedValues(unittest.TestCase):
    """Fingerprints and protobuf value conversion."""

    def test_string_and_number_never_collide(self):
        self.assertNotEqual(typed_key("3"), typed_key(3))
        self.assertEqual(typed_key("3"), "s:3")
        self.assertEqual(typed_key(3), "n:3")

    def test_integral_float_matches_int(self):
        self.assertEqual(typed_key(3.0), typed_key(3))
        self.assertNotEqual(typed_key(3.5), typed_key(3))

    def test_bool_is_not_a_number(self):
        self.assertEqual(typed_key(True), "b:true")
        self.assertEqual(typed_key(False), "b:false")
        self.assertNotEqual(typed_key(True), typed_key(1))

    def test_objects_are_json_fingerprinted(self):
        self.assertEqual(typed_key({"a": 1}), 'o:{"a":1}')
        self.assertEqual(typed_key([1, 2]), "o:[1,2]")
        self.assertEqual(typed_key(None), "o:null")

    def test_to_typed_value_fields(self):
        self.assertTrue(to_typed_value("x").HasField("string_value"))
        self.assertTrue(to_typed_value(True).HasField("bool_value"))
        self.assertTrue(to_typed_value(7).HasField("int_value"))
        self.assertTrue(to_typed_value(-7).HasField("sint_value"))
        self.assertTrue(to_typed_value(2 ** 63).HasField("uint_value"))
        self.assertTrue(to_typed_value(1.5).HasField("double_value"))

        nested = to_typed_value({"a": [1, 2]})
        self.assertEqual(nested.string_value, '{"a":[1,2]}')

    def test_value_of_round_trips_scalars(self):
        for value in ("baz", True, False, 3, -12, 2.25):
            self.assertEqual(value_of(to_typed_value(value)), value)


class TestLayerDictionary(unittest.TestCase):
    """Interning and merging."""

    def setUp(self):
        self.tile = build_nyc_tile()
        self.layer = self.tile.layers[0]
        self.dictionary = LayerDictionary(self.layer)

    def test_intern_existing_key_reuses_index(self):
        expected = key_index(self.layer, "BoroName")
        size = len(self.layer.keys)

        self.assertEqual(self.dictionary.intern_key("BoroName"), expected)
        self.assertEqual(len(self.layer.keys), size)

    def test_intern_key_is_idempotent(self):
        first = self.dictionary.intern_key("foo")
        size = len(self.layer.keys)
        second = self.dictionary.intern_key("foo")

        self.assertEqual(first, second)
        self.assertEqual(len(self.layer.keys), size)
        self.assertEqual(self.layer.keys[first], "foo")

    def test_intern_value_is_idempotent(self):
        for value in ("baz", 3, 2.5, True, {"nested": [1]}):
            first = self.dictionary.intern_value(value)
            size = len(self.layer.values)
            second = self.dictionary.intern_value(value)

            self.assertEqual(first, second)
            self.assertEqual(len(self.layer.values), size)

    def test_intern_value_reuses_existing_entry(self):
        size = len(self.layer.values)
        index = self.dictionary.intern_value("Queens")

        self.assertEqual(len(self.layer.values), size)
        self.assertEqual(value_of(self.layer.values[index]), "Queens")

    def test_string_and_number_get_separate_entries(self):
        number = self.dictionary.intern_value(4)
        string = self.dictionary.intern_value("4")

        self.assertNotEqual(number, string)

    def test_object_shares_entry_with_identical_json_string(self):
        as_string = self.dictionary.intern_value('{"a":1}')
        as_object = self.dictionary.intern_value({"a": 1})

        self.assertEqual(as_string, as_object)

    def test_merge_record_appends_pairs(self):
        feature = self.layer.features[0]
        before = feature_properties(self.layer, feature)
        tag_count = len(feature.tags)

        self.dictionary.merge_record(feature, {"foo": 3, "bar": "baz"})

        self.assertEqual(len(feature.tags), tag_count + 4)
        self.assertEqual(
            feature_properties(self.layer, feature),
            {**before, "foo": 3, "bar": "baz"}
        )

    def test_merge_does_not_remove_earlier_pair(self):
        feature = self.layer.features[0]
        self.dictionary.merge_record(feature, {"BoroName": "Elsewhere"})

        boro_name = key_index(self.layer, "BoroName")
        pairs = [pair for pair in iter_tag_pairs(feature) if pair[0] == boro_name]

        self.assertEqual(len(pairs), 2)
        self.assertEqual(feature_properties(self.layer, feature)["BoroName"], "Elsewhere")

    def test_tags_stay_even_length(self):
        for feature in self.layer.features:
            self.dictionary.merge_record(feature, {"a": 1, "b": "two", "c": None})
            self.assertEqual(len(feature.tags) % 2, 0)


class TestLayerFilters(unittest.TestCase):
    """Key projection and required-key filtering."""

    def setUp(self):
        self.tile = build_nyc_tile()
        self.layer = self.tile.layers[0]

    def test_select_keys_keeps_only_listed_names(self):
        keys_before = list(self.layer.keys)
        select_keys(self.layer, ["BoroCode", "NTACode"])

        for properties in layer_properties(self.layer):
            self.assertEqual(set(properties), {"BoroCode", "NTACode"})

        # Dictionaries are untouched until compaction
        self.assertEqual(list(self.layer.keys), keys_before)

    def test_select_keys_with_unknown_name(self):
        select_keys(self.layer, ["nope"])

        for properties in layer_properties(self.layer):
            self.assertEqual(properties, {})

    def test_filter_removes_features_missing_required(self):
        removed = filter_features_missing_keys(self.layer, ["Shape_Area"])

        self.assertEqual(removed, 1)
        self.assertEqual(
            [p["NTACode"] for p in layer_properties(self.layer)],
            ["QN99", "QN60"]
        )

    def test_filter_preserves_order(self):
        tile = build_layer_tile({"points": [
            {"id": 1, "flag": True},
            {"id": 2},
            {"id": 3, "flag": False},
            {"id": 4},
            {"id": 5, "flag": True},
        ]})
        layer = tile.layers[0]

        removed = filter_features_missing_keys(layer, ["flag"])

        self.assertEqual(removed, 2)
        self.assertEqual([p["id"] for p in layer_properties(layer)], [1, 3, 5])

    def test_filter_with_unknown_required_removes_everything(self):
        removed = filter_features_missing_keys(self.layer, ["qux"])

        self.assertEqual(removed, 3)
        self.assertEqual(len(self.layer.features), 0)

    def test_filter_without_required_names_is_a_no_op(self):
        self.assertEqual(filter_features_missing_keys(self.layer, []), 0)
        self.assertEqual(len(self.layer.features), 3)


class TestCompaction(unittest.TestCase):
    """Dictionary compaction."""

    def setUp(self):
        self.tile = build_nyc_tile()
        self.layer = self.tile.layers[0]

    def assert_fully_referenced(self, layer):
        used_keys = set()
        used_values = set()
        for feature in layer.features:
            for key_tag, value_tag in iter_tag_pairs(feature):
                used_keys.add(key_tag)
                used_values.add(value_tag)
        self.assertEqual(used_keys, set(range(len(layer.keys))))
        self.assertEqual(used_values, set(range(len(layer.values))))

    def test_compact_drops_unreferenced_entries(self):
        select_keys(self.layer, ["NTACode"])
        before = layer_properties(self.layer)

        compact(self.layer)

        self.assertEqual(list(self.layer.keys), ["NTACode"])
        self.assertEqual(len(self.layer.values), 3)
        self.assertEqual(layer_properties(self.layer), before)
        self.assert_fully_referenced(self.layer)

    def test_compact_after_filter_and_merge(self):
        dictionary = LayerDictionary(self.layer)
        dictionary.merge_record(self.layer.features[2], {"foo": 1, "only_here": "x"})
        filter_features_missing_keys(self.layer, ["Shape_Area"])
        before = layer_properties(self.layer)

        compact(self.layer)

        self.assertNotIn("only_here", list(self.layer.keys))
        self.assertNotIn("Brooklyn", [value_of(v) for v in self.layer.values])
        self.assertEqual(layer_properties(self.layer), before)
        self.assert_fully_referenced(self.layer)

    def test_compact_keeps_duplicate_pairs(self):
        dictionary = LayerDictionary(self.layer)
        feature = self.layer.features[0]
        dictionary.merge_record(feature, {"NTACode": "QN99-b"})
        tag_count = len(feature.tags)

        compact(self.layer)

        self.assertEqual(len(feature.tags), tag_count)
        self.assertEqual(feature_properties(self.layer, feature)["NTACode"], "QN99-b")

    def test_compact_is_a_no_op_on_compact_layer(self):
        compact(self.layer)
        keys = list(self.layer.keys)
        values = [value_of(v) for v in self.layer.values]

        compact(self.layer)

        self.assertEqual(list(self.layer.keys), keys)
        self.assertEqual([value_of(v) for v in self.layer.values], values)

    def test_compact_empty_layer(self):
        filter_features_missing_keys(self.layer, ["qux"])
        compact(self.layer)

        self.assertEqual(len(self.layer.keys), 0)
        self.assertEqual(len(self.layer.values), 0)


if __name__ == '__main__':
    unittest.main(verbosity=2, buffer=True)
