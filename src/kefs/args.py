"""Argument parsing for the kefs command line."""

import argparse


def _add_common(parser):
    parser.add_argument("--cache-dir",
                        dest="CACHE_DIR",
                        help="Cache root directory (default: ~/.kefs)",
                        action="store",
                        type=str)
    parser.add_argument("--settings",
                        dest="SETTINGS",
                        help="Path to the persisted plugin and repository settings (YAML)",
                        action="store",
                        type=str)


def build_parser():
    """Builds the argument parser with one sub-command per action."""
    parser = argparse.ArgumentParser(
        prog="kefs",
        description="kefs - Kotlin compiler plugin resolver and exception analyzer",
        add_help=True,
    )
    parser.add_argument("--loglevel",
                        dest="LOG_LEVEL",
                        help="Set the logging level",
                        action="store",
                        type=str,
                        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'],
                        default='INFO')
    parser.add_argument("-c", "--config",
                        dest="CONFIG",
                        help="Path to configuration file (YAML)",
                        action="store",
                        type=str)

    commands = parser.add_subparsers(dest="COMMAND", metavar="command")
    commands.required = True

    resolve = commands.add_parser("resolve", help="Resolve and cache the jars of a plugin")
    resolve.add_argument("-p", "--plugin",
                         dest="PLUGIN",
                         help="Configured plugin name, i.e: kotlinx-rpc",
                         action="store", type=str,
                         required=True)
    resolve.add_argument("-V", "--version",
                         dest="VERSION",
                         help="Requested library version",
                         action="store", type=str,
                         required=True)
    resolve.add_argument("--kotlin-version",
                         dest="KOTLIN_VERSION",
                         help="Kotlin compiler version of the host",
                         action="store", type=str,
                         required=True)
    _add_common(resolve)

    validate = commands.add_parser("validate", help="Validate a replacement pattern")
    pattern_group = validate.add_mutually_exclusive_group(required=True)
    pattern_group.add_argument("--version-pattern",
                               dest="VERSION_PATTERN",
                               help="Version pattern, i.e: <kotlin-version>-<lib-version>",
                               action="store", type=str)
    pattern_group.add_argument("--jar-pattern",
                               dest="JAR_PATTERN",
                               help="Jar name pattern, i.e: kotlinx-rpc-<artifact-id>",
                               action="store", type=str)

    clear = commands.add_parser("clear-cache", help="Delete cached jars of a Kotlin version")
    clear.add_argument("--kotlin-version",
                       dest="KOTLIN_VERSION",
                       help="Kotlin compiler version of the host",
                       action="store", type=str,
                       required=True)
    _add_common(clear)

    analyze = commands.add_parser("analyze-log", help="Attribute logged stack traces to cached jars")
    analyze.add_argument("LOG_FILE",
                         help="Log file containing JVM stack traces",
                         type=str)
    analyze.add_argument("--kotlin-version",
                         dest="KOTLIN_VERSION",
                         help="Kotlin compiler version of the host",
                         action="store", type=str,
                         required=True)
    analyze.add_argument("--no-reports",
                         dest="NO_REPORTS",
                         help="Do not write report files",
                         action="store_true")
    _add_common(analyze)

    return parser


def parse_args(argv=None):
    """Parses the arguments passed to the program."""
    return build_parser().parse_args(argv)
