"""Rendering of a PruneReport for stdout."""

from __future__ import annotations

import json
from typing import Any, TextIO

from registry_prune.base import Repository
from registry_prune.executor import DeletionOutcome, PruneReport


def _outcome_dict(outcome: DeletionOutcome) -> dict[str, Any]:
    return {
        "digest": outcome.image.digest,
        "tags": list(outcome.image.tags),
        "status": outcome.status.value,
        "reason": outcome.reason,
    }


def report_as_dict(report: PruneReport, repository: Repository, kept: int) -> dict[str, Any]:
    return {
        "repository": str(repository),
        "dry_run": report.dry_run,
        "cancelled": report.cancelled,
        "kept": kept,
        "deleted": report.deleted,
        "skipped": report.skipped,
        "failed": report.failed,
        "outcomes": [_outcome_dict(o) for o in report.outcomes],
        "failures": [_outcome_dict(o) for o in report.failures],
    }


def format_text(report: PruneReport, repository: Repository, kept: int) -> str:
    mode = "Dry Run" if report.dry_run else "Live"
    lines = [
        f"Registry prune: {repository} ({mode})",
        f"  Kept:    {kept}",
        f"  Deleted: {report.deleted}",
        f"  Skipped: {report.skipped}",
        f"  Failed:  {report.failed}",
    ]
    if report.cancelled:
        lines.append("  Run was cancelled before all deletions were attempted")

    if report.outcomes:
        lines.append("")
        for outcome in report.outcomes:
            tags = ", ".join(outcome.image.tags) if outcome.image.tags else "untagged"
            status = outcome.status.value.upper()
            suffix = f" ({outcome.reason})" if outcome.reason else ""
            lines.append(f"  {status:<8}{outcome.image.short_digest}  {tags}{suffix}")

    if report.failures:
        lines.append("")
        lines.append("Failures:")
        for outcome in report.failures:
            lines.append(f"  {outcome.image.digest}: {outcome.reason}")

    return "\n".join(lines)


def write_report(
    report: PruneReport,
    repository: Repository,
    kept: int,
    output_format: str,
    stream: TextIO,
) -> None:
    if output_format == "json":
        stream.write(json.dumps(report_as_dict(report, repository, kept), indent=2))
    else:
        stream.write(format_text(report, repository, kept))
    stream.write("\n")
