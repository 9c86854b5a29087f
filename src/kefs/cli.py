"""Command line entry point: ``kefs <command> ...``."""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
import sys
from pathlib import Path
from typing import List, Tuple

from kefs.analysis.reporter import ExceptionReporter, ExceptionsReport
from kefs.analysis.service import ExceptionAnalyzerService
from kefs.analysis.throwable import parse_all
from kefs.args import parse_args
from kefs.cache import disk
from kefs.common.http_client import HttpClient
from kefs.common.logging_utils import configure_logging, extra_context, is_debug_enabled
from kefs.config import KefsConfig
from kefs.constants import Constants, ExitCodes, _load_yaml_config, apply_config
from kefs.errors import KefsError
from kefs.listeners import Discovery
from kefs.registry.locator import ArtifactLocator, BundleResult, CachedResult, FailedToFetchResult
from kefs.settings.defaults import with_defaults
from kefs.settings.models import RepositoryType, SettingsState, VersionedPluginDescriptor
from kefs.settings.serializer import load_state
from kefs.settings.validation import validate_jar_pattern, validate_version_pattern
from kefs.versioning.models import RequestedVersion, ResolvedVersion

logger = logging.getLogger(__name__)


def _setup_logging(args) -> None:
    # Honor CLI --loglevel through the environment
    if getattr(args, "LOG_LEVEL", None):
        os.environ[Constants.ENV_LOG_LEVEL] = str(args.LOG_LEVEL).upper()
    configure_logging()


def build_config(args, cfg) -> KefsConfig:
    """YAML config first, then CLI flags on top."""
    config = KefsConfig.from_mapping(cfg)
    overrides = KefsConfig.from_args(args)
    if getattr(args, "CACHE_DIR", None):
        config.cache_root = overrides.cache_root
    if overrides.settings_file is not None:
        config.settings_file = overrides.settings_file
    config.auto_update = False
    config.watch_files = False
    return config


def load_settings(config: KefsConfig) -> SettingsState:
    user_state = load_state(config.settings_file) if config.settings_file else SettingsState()
    return with_defaults(user_state)


def format_bundle(bundle: BundleResult) -> List[str]:
    lines = []
    for maven_id, result in bundle.locator_results.items():
        if isinstance(result, CachedResult):
            lines.append(f"{maven_id}: {result.jar.path} ({result.state.resolved_version})")
        else:
            message = getattr(result.state, "message", "bundle is incomplete")
            lines.append(f"{maven_id}: {type(result.state).__name__}: {message}")
    return lines


def bundle_exit_code(bundle: BundleResult) -> ExitCodes:
    if bundle.all_found():
        return ExitCodes.SUCCESS
    if any(isinstance(r, FailedToFetchResult) for r in bundle.locator_results.values()):
        return ExitCodes.CONNECTION_ERROR
    return ExitCodes.EXIT_WARNINGS


async def resolve(config: KefsConfig, state: SettingsState, plugin_name: str, version: str,
                  kotlin_version: str) -> BundleResult:
    plugin = state.plugin_by_name(plugin_name)
    if plugin is None:
        raise KefsError(f"Unknown plugin: {plugin_name}")
    versioned = VersionedPluginDescriptor(plugin, RequestedVersion(version))
    config.ensure_cache_root()
    async with HttpClient() as http:
        locator = ArtifactLocator(http)
        return await locator.locate_artifacts(versioned, kotlin_version, config.cache_root)


def cached_discoveries(config: KefsConfig, state: SettingsState, kotlin_version: str) -> List[Discovery]:
    """Every cached jar of an enabled plugin with valid metadata."""
    discoveries = []
    for plugin in state.plugins:
        if not plugin.enabled:
            continue
        for maven_id in plugin.ids:
            base = disk.artifact_cache_dir(config.cache_root, kotlin_version, maven_id)
            jars = disk.list_cached_jars(base, maven_id, kotlin_version, plugin.replacement)
            for lib_version, path in sorted(jars.items()):
                metadata = disk.read_metadata(path)
                origin = state.repository_by_name(metadata.origin_repository_name) if metadata else None
                if origin is None:
                    logger.debug("Skipping %s: no known origin repository", path)
                    continue
                discoveries.append(Discovery(
                    plugin_name=plugin.name,
                    maven_id=maven_id.id,
                    requested_version=RequestedVersion(lib_version),
                    resolved_version=ResolvedVersion(lib_version),
                    origin=origin,
                    jar=path,
                    checksum=disk.md5(path),
                    is_local=origin.type is RepositoryType.PATH,
                ))
    return discoveries


async def analyze_log(config: KefsConfig, state: SettingsState, text: str, kotlin_version: str,
                      write_reports: bool = True) -> Tuple[List[ExceptionsReport], List[Path]]:
    """Attribute the stack traces in ``text`` to cached jars and report them.

    Returns:
        The reports and the paths written (empty when ``write_reports`` is False).
    """
    reporter = ExceptionReporter(lambda: state)
    for discovery in cached_discoveries(config, state, kotlin_version):
        reporter.discovered(discovery)

    traces = parse_all(text)
    logger.info("Found %d stack traces in log", len(traces))
    async with ExceptionAnalyzerService(reporter) as service:
        for info in traces:
            service.submit(info)
        await service.join()

    written = []
    reports = reporter.reports()
    for report in reports:
        print(f"{report.plugin_name} ({report.maven_id}) {report.resolved_version}: "
              f"{len(report.exception_ids)} exception(s), probably incompatible: "
              f"{str(report.is_probably_incompatible).lower()}")
        if write_reports:
            reports_dir = disk.host_cache_dir(config.cache_root, kotlin_version) / Constants.REPORTS_DIR_NAME
            written.append(reporter.write_report(report, reports_dir, kotlin_version))
    return reports, written


def clear_cache(config: KefsConfig, kotlin_version: str) -> bool:
    target = disk.host_cache_dir(config.cache_root, kotlin_version)
    if not target.exists():
        return False
    shutil.rmtree(target)
    return True


def _run_validate(args) -> ExitCodes:
    if args.VERSION_PATTERN is not None:
        error = validate_version_pattern(args.VERSION_PATTERN)
    else:
        error = validate_jar_pattern(args.JAR_PATTERN)
    if error is not None:
        print(f"Invalid pattern: {error}")
        return ExitCodes.FILE_ERROR
    print("Pattern is valid")
    return ExitCodes.SUCCESS


def run(args) -> ExitCodes:
    if args.COMMAND == "validate":
        return _run_validate(args)

    cfg = _load_yaml_config(getattr(args, "CONFIG", None))
    apply_config(cfg)
    config = build_config(args, cfg)

    if args.COMMAND == "clear-cache":
        removed = clear_cache(config, args.KOTLIN_VERSION)
        print("Cache cleared" if removed else "Nothing to clear")
        return ExitCodes.SUCCESS

    state = load_settings(config)

    if args.COMMAND == "resolve":
        bundle = asyncio.run(resolve(config, state, args.PLUGIN, args.VERSION, args.KOTLIN_VERSION))
        for line in format_bundle(bundle):
            print(line)
        return bundle_exit_code(bundle)

    if args.COMMAND == "analyze-log":
        try:
            text = Path(args.LOG_FILE).read_text(encoding="utf-8", errors="replace")
        except OSError as exc:
            logger.error("Cannot read log file %s: %s", args.LOG_FILE, exc)
            return ExitCodes.FILE_ERROR
        reports, written = asyncio.run(analyze_log(
            config, state, text, args.KOTLIN_VERSION, write_reports=not args.NO_REPORTS
        ))
        for path in written:
            print(f"Report written: {path}")
        return ExitCodes.EXIT_WARNINGS if reports else ExitCodes.SUCCESS

    logger.error("Unknown command: %s", args.COMMAND)
    return ExitCodes.FILE_ERROR


def main(argv=None) -> None:
    """Main function of the program."""
    args = parse_args(argv)
    _setup_logging(args)

    if is_debug_enabled(logger):
        logger.debug(
            "CLI start",
            extra=extra_context(event="function_entry", component="cli", action=args.COMMAND),
        )

    try:
        code = run(args)
    except KefsError as exc:
        logger.error("%s", exc)
        code = ExitCodes.FILE_ERROR

    sys.exit(code.value)


if __name__ == "__main__":
    main()
