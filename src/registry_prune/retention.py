"""Retention policies and the keep/delete partition of a catalog."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from re import Pattern

from registry_prune.base import ImageRecord
from registry_prune.catalog import Catalog
from registry_prune.errors import ConfigurationError, InvalidPolicyError

_DURATION_UNITS = {
    "s": timedelta(seconds=1),
    "m": timedelta(minutes=1),
    "h": timedelta(hours=1),
    "d": timedelta(days=1),
    "w": timedelta(weeks=1),
}
_DURATION_RE = re.compile(r"^(?:\d+[smhdw])+$")
_DURATION_PART_RE = re.compile(r"(\d+)([smhdw])")


def parse_duration(text: str) -> timedelta:
    """Parse a span such as `3d`, `12h` or `1w2d` into a timedelta."""
    value = text.strip().lower()
    if not _DURATION_RE.match(value):
        raise ConfigurationError(
            f"Invalid duration '{text}': expected a number followed by a unit "
            "(s, m, h, d, w), e.g. 3d or 1w2d"
        )
    try:
        return sum(
            (int(n) * _DURATION_UNITS[unit] for n, unit in _DURATION_PART_RE.findall(value)),
            timedelta(),
        )
    except OverflowError:
        raise ConfigurationError(f"Invalid duration '{text}': too large") from None


def format_duration(span: timedelta) -> str:
    remaining = int(span.total_seconds())
    parts = []
    for unit in ("w", "d", "h", "m", "s"):
        size = int(_DURATION_UNITS[unit].total_seconds())
        n, remaining = divmod(remaining, size)
        if n:
            parts.append(f"{n}{unit}")
    return "".join(parts) or "0s"


@dataclass(frozen=True)
class KeepWithin:
    """Keep every image pushed no longer than `duration` before now."""

    duration: timedelta

    def __post_init__(self) -> None:
        if self.duration <= timedelta(0):
            raise InvalidPolicyError(
                f"keep-within duration must be positive, got {self.duration}"
            )

    def __str__(self) -> str:
        return f"keep-within {format_duration(self.duration)}"


@dataclass(frozen=True)
class KeepLast:
    """Keep the `count` most recently pushed images."""

    count: int

    def __post_init__(self) -> None:
        if isinstance(self.count, bool) or not isinstance(self.count, int):
            raise InvalidPolicyError(f"keep-last count must be an integer, got {self.count!r}")
        if self.count < 0:
            raise InvalidPolicyError(f"keep-last count must not be negative, got {self.count}")

    def __str__(self) -> str:
        return f"keep-last {self.count}"


RetentionPolicy = KeepWithin | KeepLast


def policy_from_options(
    keep_within: str | timedelta | None = None,
    keep_last: int | str | None = None,
) -> RetentionPolicy:
    """Build the single active policy from the two mutually exclusive options."""
    if keep_within is not None and keep_last is not None:
        raise ConfigurationError("--keep-within and --keep-last are mutually exclusive")

    if keep_within is not None:
        if isinstance(keep_within, str):
            keep_within = parse_duration(keep_within)
        return KeepWithin(keep_within)

    if keep_last is None:
        raise ConfigurationError("One of --keep-within or --keep-last is required")
    if isinstance(keep_last, str):
        try:
            keep_last = int(keep_last)
        except ValueError:
            raise ConfigurationError(
                f"Invalid keep-last count '{keep_last}': expected an integer"
            ) from None
    return KeepLast(keep_last)


@dataclass(frozen=True)
class PartitionResult:
    """Disjoint keep/delete split of a catalog, both in catalog order."""

    keep: tuple[ImageRecord, ...]
    delete: tuple[ImageRecord, ...]
    reasons: dict[str, str] = field(default_factory=dict, compare=False)


def _age_days(record: ImageRecord, now: datetime) -> int:
    return (now - record.pushed_at).days


def _evaluate(
    catalog: Catalog, policy: RetentionPolicy, now: datetime
) -> list[tuple[ImageRecord, bool, str]]:
    """Returns (record, keep, reason) for every record, in catalog order."""
    if isinstance(policy, KeepWithin):
        span = format_duration(policy.duration)
        decisions = []
        for record in catalog:
            # Inclusive boundary: exactly `duration` old is still kept.
            keep = now - record.pushed_at <= policy.duration
            relation = "within" if keep else "older than"
            decisions.append(
                (record, keep, f"{relation} {span} ({_age_days(record, now)}d old)")
            )
        return decisions

    return [
        (
            record,
            position < policy.count,
            f"{'among' if position < policy.count else 'beyond'} last {policy.count} "
            f"(#{position + 1}, {_age_days(record, now)}d old)",
        )
        for position, record in enumerate(catalog)
    ]


def _protecting_tag(record: ImageRecord, protected: Pattern[str] | None) -> str | None:
    if protected is None:
        return None
    return next((tag for tag in record.tags if protected.fullmatch(tag)), None)


def partition(
    catalog: Catalog,
    policy: RetentionPolicy,
    now: datetime,
    protected: Pattern[str] | None = None,
) -> PartitionResult:
    """Split `catalog` into images to keep and images to delete.

    Pure and deterministic: the result depends only on the arguments, `now` is
    never read from the clock. Records carrying a tag that fully matches
    `protected` are kept whatever the policy says; this override is applied last.
    """
    if now.tzinfo is None:
        raise ValueError("now must be timezone-aware")

    keep: list[ImageRecord] = []
    delete: list[ImageRecord] = []
    reasons: dict[str, str] = {}

    for record, should_keep, reason in _evaluate(catalog, policy, now):
        if not should_keep:
            tag = _protecting_tag(record, protected)
            if tag is not None:
                should_keep, reason = True, f"protected tag '{tag}' ({reason})"
        (keep if should_keep else delete).append(record)
        reasons[record.digest] = reason

    return PartitionResult(tuple(keep), tuple(delete), reasons)
