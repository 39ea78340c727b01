import json
import sys
from collections.abc import Callable, Iterator
from http import HTTPStatus
from pathlib import Path
from typing import Any

import pytest
import requests
from loguru import logger

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

SETTINGS_ENV_VARS = [
    "REGISTRY_TYPE",
    "DRY_RUN",
    "CONCURRENCY",
    "MAX_RETRIES",
    "BACKOFF_FACTOR",
    "MAX_BACKOFF",
    "REQUEST_TIMEOUT",
    "PROTECTED_TAG_PATTERN",
    "OUTPUT_FORMAT",
    "LOG_LEVEL",
    "SCW_TOKEN",
    "SCW_REGION",
    "SCW_API_URL",
    "HARBOR_URL",
    "HARBOR_USERNAME",
    "HARBOR_TOKEN",
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    """Isolate tests from the caller's environment and loguru sinks."""
    for name in SETTINGS_ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    yield
    logger.remove()


def build_response(
    status: int = 200,
    body: Any = None,
    headers: dict[str, str] | None = None,
) -> requests.Response:
    response = requests.Response()
    response.status_code = status
    response.reason = HTTPStatus(status).phrase
    response.encoding = "utf-8"
    response._content = b"" if body is None else json.dumps(body).encode()
    response.headers.update(headers or {})
    return response


@pytest.fixture
def make_response() -> Callable[..., requests.Response]:
    return build_response
