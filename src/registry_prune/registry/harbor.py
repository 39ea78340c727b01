from __future__ import annotations

from collections.abc import Iterator
from typing import Any
from urllib.parse import quote

import pydantic
import requests
from pydantic import BaseModel, SecretStr

from registry_prune.base import (
    MALFORMED_PAYLOAD_ERRORS,
    ImageRecord,
    ImageRef,
    RegistryClient,
    Repository,
    parse_time,
)
from registry_prune.errors import ConfigurationError, RegistryError
from registry_prune.settings import Settings

PAGE_SIZE = 100


class HarborSettings(BaseModel):
    HARBOR_URL: str
    HARBOR_USERNAME: str
    HARBOR_TOKEN: SecretStr


class HarborClient(RegistryClient):
    """Harbor registry client.

    Required environment variables:
      HARBOR_URL,
      HARBOR_USERNAME,
      HARBOR_TOKEN (password or robot account secret)

    The repository reference is `<project>/<repository>`.
    """

    @classmethod
    def from_settings(cls, settings: Settings) -> HarborClient:
        import os

        try:
            harbor_settings = HarborSettings.model_validate(dict(os.environ))
        except pydantic.ValidationError as e:
            missing = ", ".join(str(err["loc"][0]) for err in e.errors())
            raise ConfigurationError(f"Missing or invalid Harbor setting: {missing}") from None
        return cls(
            harbor_settings.HARBOR_URL,
            harbor_settings.HARBOR_USERNAME,
            harbor_settings.HARBOR_TOKEN,
            **cls.retry_options(settings),
        )

    def __init__(
        self,
        harbor_url: str,
        username: str,
        token: SecretStr | str,
        **options: Any,
    ):
        super().__init__(**options)
        self.harbor_url = harbor_url.rstrip("/")
        if not self.harbor_url.startswith("http"):
            self.harbor_url = f"https://{self.harbor_url}"
        self.username = username
        self.token = token if isinstance(token, SecretStr) else SecretStr(token)
        self.session.auth = (username, self.token.get_secret_value())

    def _get_api_url(self, path: str) -> str:
        return f"{self.harbor_url}/api/v2.0{path}"

    def _artifacts_url(self, repository: Repository) -> str:
        # Harbor expects slashes in nested repository names to be encoded twice.
        repo = quote(quote(repository.name, safe=""), safe="")
        project = quote(repository.namespace, safe="")
        return self._get_api_url(f"/projects/{project}/repositories/{repo}/artifacts")

    def list_images(self, repository: Repository) -> Iterator[ImageRecord]:
        url: str | None = self._artifacts_url(repository)
        params: dict[str, Any] | None = {
            "page": 1,
            "page_size": PAGE_SIZE,
            "with_tag": "true",
        }

        while url:
            response = self._request("GET", url, params=params)
            artifacts = self._json(response) or []
            if not isinstance(artifacts, list):
                raise RegistryError(f"Malformed artifact page from {url}: expected a list")

            for artifact in artifacts:
                try:
                    record = self._record(repository, artifact)
                except MALFORMED_PAYLOAD_ERRORS as e:
                    raise RegistryError(
                        f"Malformed artifact in listing of {repository}: {e!r}"
                    ) from e
                yield record

            # The Link header's next URL carries the cursor and all query params.
            url = self._next_url(response)
            params = None

    def _record(self, repository: Repository, artifact: dict[str, Any]) -> ImageRecord:
        tags = artifact.get("tags") or []
        return ImageRecord(
            ImageRef(
                repository=repository,
                digest=artifact["digest"],
                tags=tuple(t["name"] for t in tags if t.get("name")),
                metadata={"artifact_id": artifact.get("id")},
            ),
            pushed_at=parse_time(artifact["push_time"]),
            size_bytes=artifact.get("size"),
        )

    def _next_url(self, response: requests.Response) -> str | None:
        next_url = response.links.get("next", {}).get("url")
        if not next_url:
            return None
        return next_url if next_url.startswith("http") else f"{self.harbor_url}{next_url}"

    def delete_image(self, image: ImageRef) -> None:
        self._request("DELETE", f"{self._artifacts_url(image.repository)}/{image.digest}")

    def _error_message(self, response: requests.Response) -> str:
        try:
            errors = response.json().get("errors") or []
        except (ValueError, AttributeError):
            errors = []
        if errors and isinstance(errors[0], dict) and errors[0].get("message"):
            return f"HTTP {response.status_code}: {errors[0]['message']}"
        return super()._error_message(response)
