import argparse
import sys
from datetime import UTC, datetime
from typing import Any

import pydantic
from loguru import logger

from registry_prune.base import Repository
from registry_prune.catalog import build_catalog
from registry_prune.errors import (
    ConfigurationError,
    RegistryError,
    ValidationError,
)
from registry_prune.executor import PruneExecutor
from registry_prune.registry import init_registry
from registry_prune.report import write_report
from registry_prune.retention import PartitionResult, partition, policy_from_options
from registry_prune.settings import Settings

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CONFIG = 2
EXIT_INTERRUPTED = 130


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="registry-prune",
        description="Prunes old images from a container registry repository.",
    )
    parser.add_argument(
        "image",
        metavar="NAMESPACE/IMAGE",
        help="repository to prune",
    )
    parser.add_argument(
        "--keep-within",
        metavar="DURATION",
        help="keep images pushed within DURATION (e.g. 3d, 12h, 1w2d) of now",
    )
    parser.add_argument(
        "--keep-last",
        metavar="N",
        help="keep the N most recently pushed images",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        default=None,
        help="report what would be deleted without deleting anything",
    )
    parser.add_argument("--registry", dest="registry_type", help="scaleway or harbor")
    parser.add_argument("--concurrency", type=int, help="parallel deletions")
    parser.add_argument(
        "--protect",
        dest="protected_tag_pattern",
        metavar="PATTERN",
        help="never delete images with a tag fully matching this regex",
    )
    parser.add_argument(
        "--format", dest="output_format", choices=["text", "json"], help="report format"
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="debug logging")
    return parser


def load_settings(args: argparse.Namespace) -> Settings:
    overrides: dict[str, Any] = {
        k: v
        for k in (
            "registry_type",
            "dry_run",
            "concurrency",
            "protected_tag_pattern",
            "output_format",
        )
        if (v := getattr(args, k, None)) is not None
    }
    if args.verbose:
        overrides["log_level"] = "DEBUG"
    try:
        return Settings(**overrides)
    except pydantic.ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        raise ConfigurationError(f"Invalid settings: {problems}") from None


def configure_logging(level: str) -> None:
    logger.remove()
    logger.add(sys.stderr, level=level)


def _log_decisions(result: PartitionResult) -> None:
    for action, records in (("KEEP", result.keep), ("DELETE", result.delete)):
        for record in records:
            tags = ", ".join(record.tags) if record.tags else "untagged"
            logger.debug(
                f"[{record.ref.short_digest}] {action}: {result.reasons.get(record.digest)} ({tags})"
            )


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    # Everything up to init_registry is validated before any network call.
    try:
        settings = load_settings(args)
        configure_logging(settings.log_level)
        policy = policy_from_options(args.keep_within, args.keep_last)
        repository = Repository.parse(args.image)
        registry, registry_info = init_registry(settings)
    except (ConfigurationError, ValidationError) as e:
        logger.error(f"Error: {e}")
        return EXIT_CONFIG

    logger.info(
        f"Registry: {registry_info} | Repository: {repository} | Policy: {policy} | "
        f"Dry run: {settings.dry_run}"
    )

    try:
        catalog = build_catalog(registry.list_images(repository))
    except RegistryError as e:
        logger.error(f"Error listing {repository}: {e}")
        return EXIT_FAILED
    except KeyboardInterrupt:
        logger.warning(f"Interrupted while listing {repository}, nothing was deleted")
        return EXIT_INTERRUPTED
    logger.info(f"Found {len(catalog)} image(s)")

    result = partition(
        catalog, policy, datetime.now(UTC), settings.compiled_protected_pattern
    )
    _log_decisions(result)
    logger.info(
        f"Summary: {len(result.keep)} images to keep, {len(result.delete)} images to delete"
    )

    executor = PruneExecutor(registry, settings.concurrency)
    report = executor.execute(result.delete, dry_run=settings.dry_run)

    write_report(report, repository, len(result.keep), settings.output_format, sys.stdout)

    if report.cancelled:
        return EXIT_INTERRUPTED
    return report.exit_code


def run() -> None:
    sys.exit(main())


if __name__ == "__main__":
    run()
