#!/usr/bin/env python

import argparse
import logging
import sys
from getpass import getpass

import humanize
import requests
from requests.packages.urllib3.exceptions import InsecureRequestWarning

from nexus_registry import (CREDENTIALS_FILE, Registry, RegistryError,
                            load_credentials, write_credentials)
from nexus_tags import (ComparisonStrategy, TagSelectionError,
                        aggregate_layers, check_delete_criteria,
                        check_selection, filter_tags, select_for_deletion,
                        sort_tags)

# manage docker images stored in a Nexus hosted docker repository:
# - list images and tags, filtered by regular expressions
# - show size of a tag, a set of tags, or a whole image
# - delete a tag, or all but the last N tags
#
# run
# nexus-cli configure
# once to write the credentials file, then
# nexus-cli image -h
# to get more help
#
# important: deleting tags only removes manifests, run the
# "Docker - Delete unused manifests and images" and
# "Admin - Compact blob store" tasks in Nexus to reclaim space


def non_negative_int(value):
    try:
        number = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError("{0} is not an integer".format(value))
    if number < 0:
        raise argparse.ArgumentTypeError("{0} must not be negative".format(value))
    return number


def add_filter_arguments(parser, what="tags"):
    parser.add_argument(
        '-e', '--expression',
        help="Filter {0} by regular expression, may be repeated; "
             "all expressions must match, prefix with ! to negate one".format(what),
        action='append',
        metavar="REGEX")

    parser.add_argument(
        '-v', '--invert',
        help="Invert filter results",
        action='store_const',
        default=False,
        const=True)


def add_sort_argument(parser):
    parser.add_argument(
        '-s', '--sort',
        help="Sort tags by semantic version, assuming all tags are semver except latest. "
             "Any other value sorts by the first number found in the tag",
        default="default",
        metavar="semver")


def parse_args(args=None):
    parser = argparse.ArgumentParser(
        prog="nexus-cli",
        description="Manage Docker Private Registry on Nexus",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=("""
IMPORTANT: deleting tags only removes manifests, run the
           "Docker - Delete unused manifests and images" and
           "Admin - Compact blob store" tasks in Nexus afterwards
           to reclaim disk space.
                """))

    parser.add_argument(
        '-c', '--credentials',
        help="Path to the credentials file ({0} if not set)".format(CREDENTIALS_FILE),
        default=CREDENTIALS_FILE,
        metavar="PATH")

    parser.add_argument(
        '--debug',
        help=('Turn debug output'),
        action='store_const',
        default=False,
        const=True)

    parser.add_argument(
        '--no-validate-ssl',
        help="Disable ssl validation",
        action='store_const',
        default=False,
        const=True)

    commands = parser.add_subparsers(dest="command", metavar="COMMAND")
    commands.required = True

    configure = commands.add_parser('configure', help="Configure Nexus Credentials")
    configure.set_defaults(func=configure_credentials)

    image = commands.add_parser('image', help="Manage Docker Images")
    image_commands = image.add_subparsers(dest="image_command", metavar="COMMAND")
    image_commands.required = True

    ls = image_commands.add_parser('ls', help="List all images in repository")
    add_filter_arguments(ls, "images")
    ls.add_argument(
        '-i', '--images-only',
        help="Print only images, useful for scripts",
        action='store_const',
        default=False,
        const=True)
    ls.set_defaults(func=list_images)

    tags = image_commands.add_parser('tags', help="Display all image tags")
    tags.add_argument('-n', '--name', help="List tags by image name", required=True)
    add_filter_arguments(tags)
    add_sort_argument(tags)
    tags.set_defaults(func=list_tags_by_image)

    info = image_commands.add_parser('info', help="Show image details")
    info.add_argument('-n', '--name', required=True)
    info.add_argument('-t', '--tag')
    add_filter_arguments(info)
    info.add_argument(
        '--humanize',
        help="Prints size as human readable",
        action='store_const',
        default=False,
        const=True)
    info.set_defaults(func=show_image_info)

    delete = image_commands.add_parser('delete', help="Delete images")
    delete.add_argument('-n', '--name', required=True)
    delete.add_argument('-t', '--tag', help="Delete this tag only, all other options are ignored")
    delete.add_argument(
        '-k', '--keep',
        help="Number of tags to keep, the highest ones by sort order",
        type=non_negative_int,
        metavar="N")
    add_filter_arguments(delete)
    add_sort_argument(delete)
    delete.add_argument(
        '--dry-run',
        help="Only print the tags that would be deleted",
        action='store_const',
        default=False,
        const=True)
    delete.set_defaults(func=delete_images)

    size = image_commands.add_parser('size', help="Show total size of image including all tags")
    size.add_argument('-n', '--name', required=True)
    size.add_argument(
        '--humanize',
        help="Prints size as human readable",
        action='store_const',
        default=False,
        const=True)
    size.set_defaults(func=show_total_image_size)

    return parser.parse_args(args)


def format_size(size, human_readable=False):
    if human_readable:
        return humanize.naturalsize(size)
    return str(size)


def get_registry(args):
    credentials = load_credentials(args.credentials)
    return Registry.create(credentials, args.no_validate_ssl)


def configure_credentials(args):
    host = input("Enter Nexus Host: ").strip()
    repository = input("Enter Nexus Repository Name: ").strip()
    username = input("Enter Nexus Username: ").strip()
    password = getpass("Enter Nexus Password: ")

    write_credentials(args.credentials, host, username, password, repository)
    logging.info("Credentials saved to {0}".format(args.credentials))


def list_images(args, registry=None):
    registry = registry or get_registry(args)

    images = filter_tags(registry.list_images(), args.expression, args.invert)
    for image in images:
        print(image)
    if not args.images_only:
        print("Total images: {0}".format(len(images)))


def list_tags_by_image(args, registry=None):
    registry = registry or get_registry(args)

    tags = registry.list_tags(args.name)
    tags = filter_tags(tags, args.expression, args.invert)
    tags = sort_tags(tags, ComparisonStrategy.from_name(args.sort))

    for tag in tags:
        print(tag)
    print("There are {0} images for {1}".format(len(tags), args.name))


def show_image_info(args, registry=None):
    registry = registry or get_registry(args)

    if args.tag:
        tags = [args.tag]
    else:
        tags = filter_tags(registry.list_tags(args.name), args.expression, args.invert)

    manifests = []
    for tag in tags:
        logging.debug("  fetching manifest of {0}:{1}".format(args.name, tag))
        manifests.append(registry.image_manifest(args.name, tag))
    sizes = aggregate_layers(manifests)

    print("Image: {0}:{1}".format(args.name, args.tag or ''))
    print("Size: {0}".format(format_size(sizes.config_size, args.humanize)))
    print("Layers:")
    for digest, size in sizes.layers.items():
        print("\t{0}\t{1}".format(digest, format_size(size, args.humanize)))
    print("Total layers size: {0}".format(format_size(sizes.total_layer_size, args.humanize)))
    print("Total size: {0}".format(format_size(sizes.total_size, args.humanize)))


def delete_tag(registry, image_name, tag, dry_run):
    if dry_run:
        logging.info("would delete image {0} tag {1}".format(image_name, tag))
        return
    registry.delete_image_by_tag(image_name, tag)


def delete_images(args, registry=None):
    check_delete_criteria(args.tag, args.keep, args.expression)

    registry = registry or get_registry(args)

    # if a specific tag is provided, ignore all other options
    if args.tag:
        delete_tag(registry, args.name, args.tag, args.dry_run)
        return

    tags = filter_tags(registry.list_tags(args.name), args.expression, args.invert)
    check_selection(tags, args.keep)

    tags = sort_tags(tags, ComparisonStrategy.from_name(args.sort))
    keep = args.keep or 0
    tags_to_delete = select_for_deletion(tags, keep)

    if tags_to_delete:
        logging.info("Will keep tags: {0}".format(", ".join(tags[len(tags_to_delete):])))
    for tag in tags_to_delete:
        print("{0}:{1} image will be deleted ...".format(args.name, tag))
        delete_tag(registry, args.name, tag, args.dry_run)


def show_total_image_size(args, registry=None):
    registry = registry or get_registry(args)

    # layers are deduplicated per tag, not across tags
    total_size = 0
    for tag in registry.list_tags(args.name):
        manifest = registry.image_manifest(args.name, tag)
        total_size += aggregate_layers([manifest]).total_layer_size

    print("{0} {1}".format(format_size(total_size, args.humanize), args.name))


def main_loop(args):

    if args.debug:
        log_level = logging.DEBUG
    else:
        log_level = logging.INFO

    logging.basicConfig(format='%(asctime)s %(levelname)-10s %(message)s',
                        datefmt='%d-%b-%y %H:%M:%S',
                        level=log_level)
    logging.getLogger("requests").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)

    if args.no_validate_ssl:
        requests.packages.urllib3.disable_warnings(InsecureRequestWarning)

    args.func(args)


def main(argv=None):
    args = parse_args(argv)
    try:
        main_loop(args)
    except (TagSelectionError, RegistryError) as e:
        logging.error(e)
        sys.exit(1)
    except KeyboardInterrupt:
        logging.info("Ctrl-C pressed, quitting")
        sys.exit(1)


if __name__ == "__main__":
    main()
