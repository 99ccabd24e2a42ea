import enum
import functools
import logging
import re
from collections import namedtuple

import semver

# tag selection and retention:
# - filter tags (or image names) by a list of regular expressions
# - sort tags by the number they carry, or by semantic version
# - pick the tags to delete so that the last N are kept
# - sum config/layer sizes of one or more manifests

LATEST_TAG = "latest"

_NUMBER = re.compile(r'[0-9]+')


class TagSelectionError(ValueError):
    pass


class InvalidExpressionError(TagSelectionError):
    pass


class InvalidVersionError(TagSelectionError):
    pass


class NoSelectionError(TagSelectionError):
    pass


class NothingSelectedError(TagSelectionError):
    pass


Expression = namedtuple('Expression', ['pattern', 'negate'])


def parse_expression(raw):
    """Compile one filter expression.

    A leading "!" is removed before compiling and negates the expression.
    """
    negate = raw.startswith('!')
    if negate:
        raw = raw[1:]
    try:
        pattern = re.compile(raw)
    except re.error as e:
        raise InvalidExpressionError(
            "invalid filter expression {0!r}: {1}".format(raw, e))
    return Expression(pattern, negate)


def effective_pass(invert, negate, matched):
    # default is "must match", invert flips it for every expression,
    # a "!" prefix flips it again for that expression only
    expected = not invert
    if negate:
        expected = not expected
    return matched == expected


def filter_tags(tags, expressions, invert=False):
    """Keep the tags that satisfy every expression, in their original order.

    No expressions means no filtering.
    """
    if not expressions:
        return list(tags)

    compiled = [parse_expression(raw) for raw in expressions]

    result = []
    for tag in tags:
        for expression in compiled:
            matched = expression.pattern.search(tag) is not None
            if not effective_pass(invert, expression.negate, matched):
                logging.debug("  tag {0} filtered out by {1!r}".format(
                    tag, expression.pattern.pattern))
                break
        else:
            result.append(tag)
    return result


def extract_number(tag):
    match = _NUMBER.search(tag)
    if match is None:
        return 0
    return int(match.group())


def parse_version(tag):
    try:
        return semver.Version.parse(tag)
    except (ValueError, TypeError) as e:
        raise InvalidVersionError(
            "tag {0!r} is not a semantic version: {1}".format(tag, e))


class ComparisonStrategy(enum.Enum):
    NUMERIC = "default"
    SEMVER = "semver"

    @classmethod
    def from_name(cls, name):
        # anything but "semver" sorts numerically
        if name == cls.SEMVER.value:
            return cls.SEMVER
        return cls.NUMERIC

    def less(self, tag1, tag2):
        if self is ComparisonStrategy.NUMERIC:
            return extract_number(tag1) < extract_number(tag2)

        if tag1 == LATEST_TAG:
            return False
        if tag2 == LATEST_TAG:
            return True
        return parse_version(tag1) < parse_version(tag2)

    def validate(self, tags):
        if self is not ComparisonStrategy.SEMVER:
            return
        invalid = []
        for tag in tags:
            if tag == LATEST_TAG:
                continue
            if not semver.Version.is_valid(tag):
                invalid.append(tag)
        if invalid:
            raise InvalidVersionError(
                "cannot sort by semantic version, invalid tags: {0}".format(
                    ", ".join(invalid)))


def comparator_for(name):
    return ComparisonStrategy.from_name(name).less


def sort_tags(tags, strategy=ComparisonStrategy.NUMERIC):
    strategy.validate(tags)

    def compare(tag1, tag2):
        if strategy.less(tag1, tag2):
            return -1
        if strategy.less(tag2, tag1):
            return 1
        return 0

    return sorted(tags, key=functools.cmp_to_key(compare))


def check_delete_criteria(tag, keep, expressions):
    # a single tag bypasses selection entirely
    if tag:
        return
    if keep is None and not expressions:
        raise NoSelectionError(
            "You should either specify use tag / filter expressions, "
            "or specify how many images you want to keep")


def check_selection(tags, keep):
    if not tags and keep is None:
        raise NothingSelectedError("No images selected for deletion")


def select_for_deletion(sorted_tags, keep):
    """Return every tag except the last `keep` ones of an ascending list."""
    if keep < 0:
        raise ValueError("keep must not be negative, got {0}".format(keep))

    if len(sorted_tags) < keep:
        logging.info("Only {0} images are available".format(len(sorted_tags)))
        return []

    return list(sorted_tags[:len(sorted_tags) - keep])


Blob = namedtuple('Blob', ['digest', 'size'])


class ManifestDescriptor(namedtuple('ManifestDescriptor', ['config', 'layers'])):
    __slots__ = ()

    @classmethod
    def from_json(cls, data):
        config = data['config']
        layers = [Blob(layer['digest'], layer['size']) for layer in data.get('layers', [])]
        return cls(Blob(config['digest'], config['size']), layers)


LayerSizes = namedtuple(
    'LayerSizes', ['config_size', 'layers', 'total_layer_size', 'total_size'])


def aggregate_layers(manifests):
    # configs are counted once per manifest, layers once per digest
    config_size = 0
    layers = {}
    for manifest in manifests:
        config_size += manifest.config.size
        for layer in manifest.layers:
            if layer.digest not in layers:
                layers[layer.digest] = layer.size

    total_layer_size = sum(layers.values())
    return LayerSizes(config_size, layers, total_layer_size,
                      config_size + total_layer_size)
