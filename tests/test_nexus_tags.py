import itertools
import unittest

from nexus_tags import (Blob, ComparisonStrategy, InvalidExpressionError,
                        InvalidVersionError, ManifestDescriptor,
                        NoSelectionError, NothingSelectedError,
                        aggregate_layers, check_delete_criteria,
                        check_selection, comparator_for, effective_pass,
                        extract_number, filter_tags, parse_expression,
                        select_for_deletion, sort_tags)


TAGS = ["v1", "v2", "v3", "latest", "dev-10", "release-2.0"]


class TestEffectivePass(unittest.TestCase):

    def test_all_combinations(self):
        expected = {
            # (invert, negate, matched): passes
            (False, False, True): True,
            (False, False, False): False,
            (False, True, True): False,
            (False, True, False): True,
            (True, False, True): False,
            (True, False, False): True,
            (True, True, True): True,
            (True, True, False): False,
        }
        for invert, negate, matched in itertools.product([False, True], repeat=3):
            self.assertEqual(effective_pass(invert, negate, matched),
                             expected[(invert, negate, matched)],
                             msg="invert={0} negate={1} matched={2}".format(invert, negate, matched))


class TestParseExpression(unittest.TestCase):

    def test_plain(self):
        expression = parse_expression("^v")
        self.assertEqual(expression.pattern.pattern, "^v")
        self.assertFalse(expression.negate)

    def test_negated(self):
        expression = parse_expression("!^v")
        self.assertEqual(expression.pattern.pattern, "^v")
        self.assertTrue(expression.negate)

    def test_only_first_marker_is_stripped(self):
        expression = parse_expression("!!x")
        self.assertEqual(expression.pattern.pattern, "!x")
        self.assertTrue(expression.negate)

    def test_malformed(self):
        with self.assertRaises(InvalidExpressionError):
            parse_expression("v[")


class TestFilterTags(unittest.TestCase):

    def test_no_expressions_is_identity(self):
        self.assertEqual(filter_tags(TAGS, []), TAGS)
        self.assertEqual(filter_tags(TAGS, [], invert=True), TAGS)
        self.assertEqual(filter_tags(TAGS, None), TAGS)

    def test_single_expression(self):
        self.assertEqual(filter_tags(TAGS, ["^v"]), ["v1", "v2", "v3"])

    def test_search_is_unanchored(self):
        self.assertEqual(filter_tags(TAGS, ["2"]), ["v2", "release-2.0"])

    def test_all_expressions_must_match(self):
        self.assertEqual(filter_tags(TAGS, ["^v", "[12]"]), ["v1", "v2"])

    def test_conjunction_equals_chained_filters(self):
        e1, e2 = "[0-9]", "!^dev"
        self.assertEqual(filter_tags(TAGS, [e1, e2]),
                         filter_tags(filter_tags(TAGS, [e1]), [e2]))

    def test_invert_is_complement(self):
        kept = filter_tags(TAGS, ["^v"])
        dropped = filter_tags(TAGS, ["^v"], invert=True)
        self.assertEqual(sorted(kept + dropped), sorted(TAGS))
        self.assertFalse(set(kept) & set(dropped))

    def test_negated_expression(self):
        self.assertEqual(filter_tags(TAGS, ["!latest"]),
                         ["v1", "v2", "v3", "dev-10", "release-2.0"])

    def test_negated_expression_with_invert(self):
        self.assertEqual(filter_tags(TAGS, ["!latest"], invert=True), ["latest"])

    def test_preserves_order(self):
        tags = ["v3", "v1", "v2"]
        self.assertEqual(filter_tags(tags, ["v"]), tags)

    def test_malformed_expression_is_fatal(self):
        with self.assertRaises(InvalidExpressionError):
            filter_tags(TAGS, ["^v", "("])


class TestComparator(unittest.TestCase):

    def test_extract_number(self):
        self.assertEqual(extract_number("v10"), 10)
        self.assertEqual(extract_number("build-007-rc3"), 7)
        self.assertEqual(extract_number("latest"), 0)

    def test_strategy_from_name(self):
        self.assertIs(ComparisonStrategy.from_name("semver"), ComparisonStrategy.SEMVER)
        self.assertIs(ComparisonStrategy.from_name("default"), ComparisonStrategy.NUMERIC)
        self.assertIs(ComparisonStrategy.from_name("bogus"), ComparisonStrategy.NUMERIC)
        self.assertIs(ComparisonStrategy.from_name(None), ComparisonStrategy.NUMERIC)

    def test_numeric_sort(self):
        self.assertEqual(sort_tags(["v1", "v10", "v2"]), ["v1", "v2", "v10"])

    def test_numeric_sort_is_stable(self):
        self.assertEqual(sort_tags(["b", "a", "x1", "c"]), ["b", "a", "c", "x1"])

    def test_numeric_comparator(self):
        less = comparator_for("default")
        self.assertTrue(less("v2", "v10"))
        self.assertFalse(less("v10", "v2"))
        self.assertFalse(less("a1", "b1"))

    def test_semver_latest_is_last(self):
        for tags in itertools.permutations(["1.2.0", "latest", "1.3.0"]):
            self.assertEqual(sort_tags(list(tags), ComparisonStrategy.SEMVER),
                             ["1.2.0", "1.3.0", "latest"])

    def test_semver_latest_comparator(self):
        less = comparator_for("semver")
        self.assertFalse(less("latest", "1.0.0"))
        self.assertTrue(less("1.0.0", "latest"))
        self.assertFalse(less("latest", "latest"))

    def test_semver_precedence(self):
        tags = ["1.10.0", "1.2.0", "1.2.0-rc.1", "0.9.9", "2.0.0-alpha"]
        self.assertEqual(sort_tags(tags, ComparisonStrategy.SEMVER),
                         ["0.9.9", "1.2.0-rc.1", "1.2.0", "1.10.0", "2.0.0-alpha"])

    def test_semver_invalid_tag_is_fatal(self):
        with self.assertRaises(InvalidVersionError) as ctx:
            sort_tags(["1.0.0", "v2", "latest", "nightly"], ComparisonStrategy.SEMVER)
        self.assertIn("v2", str(ctx.exception))
        self.assertIn("nightly", str(ctx.exception))

    def test_semver_comparator_invalid_tag(self):
        with self.assertRaises(InvalidVersionError):
            comparator_for("semver")("1.0.0", "nope")


class TestRetention(unittest.TestCase):

    def test_prefix_law(self):
        tags = ["v1", "v2", "v3", "v4", "v5"]
        for keep in range(len(tags) + 1):
            deleted = select_for_deletion(tags, keep)
            self.assertEqual(deleted, tags[:len(tags) - keep])
            self.assertEqual(tags[len(deleted):], tags[len(tags) - keep:])

    def test_keep_more_than_available(self):
        self.assertEqual(select_for_deletion(["v1", "v2"], 3), [])

    def test_keep_zero_deletes_everything(self):
        self.assertEqual(select_for_deletion(["v1", "v2"], 0), ["v1", "v2"])

    def test_negative_keep(self):
        with self.assertRaises(ValueError):
            select_for_deletion(["v1"], -1)

    def test_criteria_required(self):
        with self.assertRaises(NoSelectionError):
            check_delete_criteria(None, None, [])
        check_delete_criteria("v1", None, [])
        check_delete_criteria(None, 0, [])
        check_delete_criteria(None, None, ["^v"])

    def test_empty_selection_without_keep(self):
        with self.assertRaises(NothingSelectedError):
            check_selection([], None)
        check_selection([], 2)
        check_selection(["v1"], None)

    def test_end_to_end(self):
        filtered = filter_tags(["v1", "v2", "v3", "latest"], ["^v"], invert=False)
        self.assertEqual(filtered, ["v1", "v2", "v3"])
        ordered = sort_tags(filtered, ComparisonStrategy.from_name("default"))
        self.assertEqual(ordered, ["v1", "v2", "v3"])
        deleted = select_for_deletion(ordered, 1)
        self.assertEqual(deleted, ["v1", "v2"])
        self.assertEqual(ordered[len(deleted):], ["v3"])


class TestAggregateLayers(unittest.TestCase):

    def setUp(self):
        self.manifest_a = ManifestDescriptor(Blob("sha256:ca", 100),
                                             [Blob("sha256:l1", 1000), Blob("sha256:l2", 2000)])
        self.manifest_b = ManifestDescriptor(Blob("sha256:cb", 50),
                                             [Blob("sha256:l1", 1000), Blob("sha256:l3", 300)])

    def test_single_manifest(self):
        sizes = aggregate_layers([self.manifest_a])
        self.assertEqual(sizes.config_size, 100)
        self.assertEqual(sizes.layers, {"sha256:l1": 1000, "sha256:l2": 2000})
        self.assertEqual(sizes.total_layer_size, 3000)
        self.assertEqual(sizes.total_size, 3100)

    def test_shared_layers_counted_once(self):
        sizes = aggregate_layers([self.manifest_a, self.manifest_b])
        self.assertEqual(sizes.config_size, 150)
        self.assertEqual(list(sizes.layers), ["sha256:l1", "sha256:l2", "sha256:l3"])
        self.assertEqual(sizes.total_layer_size, 3300)
        self.assertEqual(sizes.total_size, 3450)

    def test_same_manifest_twice(self):
        once = aggregate_layers([self.manifest_a])
        twice = aggregate_layers([self.manifest_a, self.manifest_a])
        self.assertEqual(twice.total_layer_size, once.total_layer_size)
        self.assertEqual(twice.config_size, 2 * once.config_size)

    def test_first_seen_size_wins(self):
        other = ManifestDescriptor(Blob("sha256:cc", 1), [Blob("sha256:l1", 9)])
        sizes = aggregate_layers([self.manifest_a, other])
        self.assertEqual(sizes.layers["sha256:l1"], 1000)

    def test_no_manifests(self):
        self.assertEqual(tuple(aggregate_layers([])), (0, {}, 0, 0))

    def test_from_json(self):
        manifest = ManifestDescriptor.from_json({
            "schemaVersion": 2,
            "mediaType": "application/vnd.docker.distribution.manifest.v2+json",
            "config": {"mediaType": "application/vnd.docker.container.image.v1+json",
                       "size": 7023, "digest": "sha256:c0"},
            "layers": [{"size": 32654, "digest": "sha256:a1"},
                       {"size": 16724, "digest": "sha256:a2"}],
        })
        self.assertEqual(manifest.config, Blob("sha256:c0", 7023))
        self.assertEqual(manifest.layers, [Blob("sha256:a1", 32654), Blob("sha256:a2", 16724)])
