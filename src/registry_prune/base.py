from __future__ import annotations

import time
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, TYPE_CHECKING

import requests
from dateutil import parser as date_parser  # type: ignore[import-untyped]
from loguru import logger

from registry_prune.errors import (
    AuthError,
    NotFoundError,
    RateLimitError,
    RegistryError,
    TransientError,
    ValidationError,
)

if TYPE_CHECKING:
    from registry_prune.settings import Settings

# Raised while reading fields out of an unexpected API payload.
MALFORMED_PAYLOAD_ERRORS = (AttributeError, KeyError, TypeError, ValueError, OverflowError)


@dataclass(frozen=True)
class Repository:
    """A `<namespace>/<image>` reference to the repository being pruned."""

    namespace: str
    name: str

    @classmethod
    def parse(cls, reference: str) -> Repository:
        # Only the first slash separates the namespace, nested image names are allowed.
        namespace, sep, name = reference.partition("/")
        if not sep or not namespace or not name:
            raise ValidationError(
                f"Invalid repository '{reference}': must be specified in the format "
                "`<namespace>/<image>`"
            )
        return cls(namespace, name)

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"


@dataclass(frozen=True)
class ImageRef:
    """One deletable unit: a digest in a repository and the tags pointing at it.

    `metadata` holds registry-specific handles (e.g. tag ids) needed to delete the
    digest and does not take part in equality.
    """

    repository: Repository
    digest: str
    tags: tuple[str, ...] = ()
    metadata: dict[str, Any] = field(default_factory=dict, compare=False, hash=False)

    @property
    def short_digest(self) -> str:
        return self.digest.split(":")[-1][:12]

    def __str__(self) -> str:
        tags = ", ".join(self.tags) if self.tags else "untagged"
        return f"{self.repository}@{self.short_digest} ({tags})"


@dataclass(frozen=True)
class ImageRecord:
    """An image as seen in the registry listing, with its push time."""

    ref: ImageRef
    pushed_at: datetime
    size_bytes: int | None = None

    def __post_init__(self) -> None:
        if self.pushed_at.tzinfo is None:
            raise ValueError(f"pushed_at must be timezone-aware for {self.ref.digest}")

    @property
    def digest(self) -> str:
        return self.ref.digest

    @property
    def tags(self) -> tuple[str, ...]:
        return self.ref.tags


def parse_time(value: str | datetime) -> datetime:
    parsed = date_parser.parse(value) if isinstance(value, str) else value
    return parsed.replace(tzinfo=UTC) if parsed.tzinfo is None else parsed


def parse_retry_after(value: str | None) -> float | None:
    """Parse a Retry-After header (delta-seconds or HTTP-date) into seconds."""
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        until = parse_time(value)
    except (ValueError, OverflowError):
        logger.debug(f"Ignoring unparsable Retry-After header: {value!r}")
        return None
    return max(0.0, (until - datetime.now(UTC)).total_seconds())


class RegistryClient(ABC):
    """Abstract base class for registry implementations.

    Subclasses build URLs and parse payloads; all HTTP traffic goes through
    `_request`, which maps status codes onto the error taxonomy and retries
    transient failures with exponential backoff.
    """

    def __init__(
        self,
        *,
        max_retries: int = 3,
        backoff_factor: float = 1.0,
        max_backoff: float = 60.0,
        timeout: float = 30.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.session = requests.Session()
        self.max_retries = max_retries
        self.backoff_factor = backoff_factor
        self.max_backoff = max_backoff
        self.timeout = timeout
        self._sleep = sleep

    @staticmethod
    def retry_options(settings: Settings) -> dict[str, Any]:
        return {
            "max_retries": settings.max_retries,
            "backoff_factor": settings.backoff_factor,
            "max_backoff": settings.max_backoff,
            "timeout": settings.request_timeout,
        }

    @classmethod
    @abstractmethod
    def from_settings(cls, settings: Settings) -> RegistryClient:
        pass

    @abstractmethod
    def list_images(self, repository: Repository) -> Iterator[ImageRecord]:
        """Lazily yield every image of `repository` in server order."""

    @abstractmethod
    def delete_image(self, image: ImageRef) -> None:
        """Delete `image` by digest. Raises a RegistryError subclass on failure."""

    def _request(self, method: str, url: str, **kwargs: Any) -> requests.Response:
        kwargs.setdefault("timeout", self.timeout)
        attempt = 0
        while True:
            error: RegistryError
            try:
                response = self.session.request(method, url, **kwargs)
            except (
                requests.exceptions.ConnectionError,
                requests.exceptions.Timeout,
            ) as e:
                error = TransientError(f"{method} {url} failed: {e}")
            except requests.exceptions.RequestException as e:
                raise RegistryError(f"{method} {url} failed: {e}") from e
            else:
                if response.ok:
                    return response
                error = self._error_from_response(response)
                if not isinstance(error, TransientError):
                    raise error

            if attempt >= self.max_retries:
                raise error
            delay = self._backoff_delay(attempt, getattr(error, "retry_after", None))
            logger.warning(
                f"{error} (attempt {attempt + 1}/{self.max_retries + 1}), "
                f"retrying in {delay:.1f}s"
            )
            self._sleep(delay)
            attempt += 1

    def _json(self, response: requests.Response) -> Any:
        try:
            return response.json()
        except ValueError as e:
            raise RegistryError(
                f"Malformed response from {response.url}: not valid JSON ({e})",
                response.status_code,
            ) from e

    def _backoff_delay(self, attempt: int, retry_after: float | None) -> float:
        delay = min(self.max_backoff, self.backoff_factor * 2**attempt)
        # The server-provided delay always wins, even over max_backoff.
        if retry_after is not None:
            delay = max(delay, retry_after)
        return delay

    def _error_from_response(self, response: requests.Response) -> RegistryError:
        status = response.status_code
        message = self._error_message(response)
        if status in (401, 403):
            return AuthError(message, status)
        if status == 404:
            return NotFoundError(message, status)
        if status == 429:
            return RateLimitError(
                message,
                status,
                retry_after=parse_retry_after(response.headers.get("Retry-After")),
            )
        if status >= 500:
            return TransientError(message, status)
        return RegistryError(message, status)

    def _error_message(self, response: requests.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            body = None
        detail = body.get("message") if isinstance(body, dict) else None
        return f"HTTP {response.status_code}: {detail or response.reason or 'request failed'}"
