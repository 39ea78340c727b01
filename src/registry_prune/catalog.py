"""Normalized, deduplicated view of every image in one repository."""

from __future__ import annotations

from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field

from loguru import logger

from registry_prune.base import ImageRecord
from registry_prune.errors import EmptyRepositoryError


@dataclass(frozen=True)
class Catalog:
    """Images of a single repository, newest first.

    Records are unique by digest and ordered by `pushed_at` descending; equal
    push times are ordered by digest so the order never depends on the listing.
    """

    records: tuple[ImageRecord, ...]
    warnings: tuple[str, ...] = field(default=(), compare=False)

    def __len__(self) -> int:
        return len(self.records)

    def __iter__(self) -> Iterator[ImageRecord]:
        return iter(self.records)

    @property
    def digests(self) -> list[str]:
        return [r.digest for r in self.records]


def sort_records(records: Iterable[ImageRecord]) -> list[ImageRecord]:
    # Two stable passes: digest ascending, then pushed_at descending.
    by_digest = sorted(records, key=lambda r: r.digest)
    return sorted(by_digest, key=lambda r: r.pushed_at, reverse=True)


def build_catalog(
    records: Iterable[ImageRecord], require_non_empty: bool = False
) -> Catalog:
    seen: dict[str, ImageRecord] = {}
    warnings: list[str] = []

    for record in records:
        first = seen.get(record.digest)
        if first is not None:
            warning = (
                f"Duplicate digest {record.ref.short_digest} in listing "
                f"(tags {list(record.tags)}), keeping first occurrence "
                f"(tags {list(first.tags)})"
            )
            logger.warning(warning)
            warnings.append(warning)
            continue
        seen[record.digest] = record

    if require_non_empty and not seen:
        raise EmptyRepositoryError("Repository contains no images")

    return Catalog(tuple(sort_records(seen.values())), tuple(warnings))
