"""Deletion of the images a retention policy rejected."""

from __future__ import annotations

import threading
from collections.abc import Iterable
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from enum import Enum

from loguru import logger

from registry_prune.base import ImageRecord, ImageRef, RegistryClient
from registry_prune.errors import (
    AuthError,
    ConfigurationError,
    NotFoundError,
    RegistryError,
)

DRY_RUN = "dry-run"
NOT_FOUND = "not found"
CANCELLED = "cancelled"


class OutcomeStatus(str, Enum):
    DELETED = "deleted"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass(frozen=True)
class DeletionOutcome:
    image: ImageRef
    status: OutcomeStatus
    reason: str | None = None
    error: Exception | None = field(default=None, compare=False)

    @classmethod
    def deleted(cls, image: ImageRef) -> DeletionOutcome:
        return cls(image, OutcomeStatus.DELETED)

    @classmethod
    def skipped(cls, image: ImageRef, reason: str) -> DeletionOutcome:
        return cls(image, OutcomeStatus.SKIPPED, reason)

    @classmethod
    def failed(cls, image: ImageRef, error: Exception) -> DeletionOutcome:
        return cls(image, OutcomeStatus.FAILED, str(error), error)


@dataclass
class PruneReport:
    """Per-image outcomes of one run, in the order the images were given."""

    outcomes: list[DeletionOutcome]
    dry_run: bool = False
    cancelled: bool = False

    def _count(self, status: OutcomeStatus) -> int:
        return sum(1 for o in self.outcomes if o.status == status)

    @property
    def deleted(self) -> int:
        return self._count(OutcomeStatus.DELETED)

    @property
    def skipped(self) -> int:
        return self._count(OutcomeStatus.SKIPPED)

    @property
    def failed(self) -> int:
        return self._count(OutcomeStatus.FAILED)

    @property
    def failures(self) -> list[DeletionOutcome]:
        return [o for o in self.outcomes if o.status == OutcomeStatus.FAILED]

    @property
    def succeeded(self) -> bool:
        return self.failed == 0

    @property
    def exit_code(self) -> int:
        return 0 if self.succeeded else 1


class PruneExecutor:
    """Deletes images through a registry client with a bounded worker pool.

    Workers only call the registry and return a DeletionOutcome; every outcome
    is recorded by the submitting thread. At most `concurrency` deletions are in
    flight, so cancellation or an authentication failure stops new calls quickly.
    """

    def __init__(self, registry: RegistryClient, concurrency: int = 1):
        if concurrency < 1:
            raise ConfigurationError(f"concurrency must be at least 1, got {concurrency}")
        self.registry = registry
        self.concurrency = concurrency
        self._cancelled = threading.Event()
        self._abort_error: AuthError | None = None

    def cancel(self) -> None:
        self._cancelled.set()

    def _halted(self) -> bool:
        return self._cancelled.is_set() or self._abort_error is not None

    def execute(self, images: Iterable[ImageRecord], dry_run: bool = False) -> PruneReport:
        refs = [image.ref for image in images]

        if dry_run:
            logger.info(f"DRY RUN: Would delete {len(refs)} images")
            for ref in refs:
                logger.info(f"DRY RUN: would delete {ref}")
            return PruneReport(
                [DeletionOutcome.skipped(ref, DRY_RUN) for ref in refs], dry_run=True
            )

        if not refs:
            logger.info("No images to delete")
            return PruneReport([])

        logger.info(
            f"PERFORMING DELETIONS: {len(refs)} images, {self.concurrency} worker(s)..."
        )
        outcomes = self._run(refs)

        for index, ref in enumerate(refs):
            if index in outcomes:
                continue
            if self._abort_error is not None:
                outcomes[index] = DeletionOutcome.failed(ref, self._abort_error)
            else:
                outcomes[index] = DeletionOutcome.skipped(ref, CANCELLED)

        report = PruneReport(
            [outcomes[i] for i in range(len(refs))],
            cancelled=self._cancelled.is_set(),
        )
        logger.info(
            f"Deleted: {report.deleted} images, {report.skipped} skipped, "
            f"{report.failed} errors"
        )
        return report

    def _run(self, refs: list[ImageRef]) -> dict[int, DeletionOutcome]:
        outcomes: dict[int, DeletionOutcome] = {}
        pending = iter(enumerate(refs))
        in_flight: dict[Future[DeletionOutcome], int] = {}

        with ThreadPoolExecutor(
            max_workers=self.concurrency, thread_name_prefix="registry-prune"
        ) as pool:
            try:
                while True:
                    while len(in_flight) < self.concurrency and not self._halted():
                        item = next(pending, None)
                        if item is None:
                            break
                        index, ref = item
                        in_flight[pool.submit(self._delete_one, ref)] = index
                    if not in_flight:
                        break

                    done, _ = wait(in_flight, return_when=FIRST_COMPLETED)
                    for future in done:
                        index = in_flight.pop(future)
                        self._record(outcomes, index, future.result())
            except KeyboardInterrupt:
                logger.warning("Interrupted, waiting for in-flight deletions to finish")
                self.cancel()
                for future, index in in_flight.items():
                    self._record(outcomes, index, future.result())

        return outcomes

    def _record(
        self, outcomes: dict[int, DeletionOutcome], index: int, outcome: DeletionOutcome
    ) -> None:
        outcomes[index] = outcome
        if isinstance(outcome.error, AuthError) and self._abort_error is None:
            # Every remaining call would fail the same way.
            self._abort_error = outcome.error
            logger.error("Authentication failed, not attempting remaining deletions")

    def _delete_one(self, ref: ImageRef) -> DeletionOutcome:
        if self._abort_error is not None:
            return DeletionOutcome.failed(ref, self._abort_error)
        try:
            self.registry.delete_image(ref)
        except NotFoundError:
            logger.info(f"Already deleted: {ref}")
            return DeletionOutcome.skipped(ref, NOT_FOUND)
        except RegistryError as e:
            logger.error(f"Error deleting image {ref}: {e}")
            return DeletionOutcome.failed(ref, e)
        except Exception as e:
            # Anything else is still confined to this image.
            logger.exception(f"Unexpected error deleting image {ref}: {e!r}")
            return DeletionOutcome.failed(ref, e)
        logger.info(f"Deleted {ref}")
        return DeletionOutcome.deleted(ref)
