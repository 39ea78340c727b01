from __future__ import annotations

from collections.abc import Iterator
from enum import Enum
from typing import Any

import pydantic
from loguru import logger
from pydantic import BaseModel, SecretStr

from registry_prune.base import (
    MALFORMED_PAYLOAD_ERRORS,
    ImageRecord,
    ImageRef,
    RegistryClient,
    Repository,
    parse_time,
)
from registry_prune.errors import ConfigurationError, NotFoundError, RegistryError
from registry_prune.settings import Settings

DEFAULT_API_URL = "https://api.scaleway.com/registry/v1"
PAGE_SIZE = 100


class Status(str, Enum):
    """Status shared by Scaleway namespaces, images and tags."""

    UNKNOWN = "unknown"
    READY = "ready"
    DELETING = "deleting"
    ERROR = "error"
    LOCKED = "locked"

    @classmethod
    def parse(cls, value: str | None) -> Status:
        try:
            return cls(value)
        except ValueError:
            return cls.UNKNOWN


class ScalewaySettings(BaseModel):
    SCW_TOKEN: SecretStr
    SCW_REGION: str = "fr-par"
    SCW_API_URL: str = DEFAULT_API_URL


class ScalewayClient(RegistryClient):
    """Scaleway Container Registry client.

    Required environment variables: SCW_TOKEN
    Optional environment variables: SCW_REGION (default fr-par), SCW_API_URL

    Scaleway lists and deletes tags rather than manifests. Tags sharing a digest
    are grouped into one image, and a digest is deleted by force-deleting one of
    its tags after checking that the tag still points at that digest.
    """

    @classmethod
    def from_settings(cls, settings: Settings) -> ScalewayClient:
        import os

        try:
            scw_settings = ScalewaySettings.model_validate(dict(os.environ))
        except pydantic.ValidationError as e:
            missing = ", ".join(str(err["loc"][0]) for err in e.errors())
            raise ConfigurationError(f"Missing or invalid Scaleway setting: {missing}") from None
        return cls(
            scw_settings.SCW_TOKEN,
            scw_settings.SCW_REGION,
            api_url=scw_settings.SCW_API_URL,
            **cls.retry_options(settings),
        )

    def __init__(
        self,
        token: SecretStr | str,
        region: str,
        api_url: str = DEFAULT_API_URL,
        **options: Any,
    ):
        super().__init__(**options)
        self.token = token if isinstance(token, SecretStr) else SecretStr(token)
        self.region = region
        self.endpoint = f"{api_url.rstrip('/')}/regions/{region}"
        self.session.headers["X-Auth-Token"] = self.token.get_secret_value()

    def _url(self, path: str) -> str:
        return f"{self.endpoint}{path}"

    def _get_json(self, path: str, params: dict[str, Any] | None = None) -> Any:
        return self._json(self._request("GET", self._url(path), params=params))

    def _paginate(
        self, path: str, key: str, params: dict[str, Any] | None = None
    ) -> Iterator[dict[str, Any]]:
        """Yield the items of a paged listing, one page request at a time.

        The page number is the continuation cursor; paging stops once
        `total_count` items were seen or the server returns an empty page.
        """
        page = 1
        seen = 0
        while True:
            body = self._get_json(
                path, {**(params or {}), "page": page, "page_size": PAGE_SIZE}
            )
            if not isinstance(body, dict):
                raise RegistryError(f"Malformed {key} page from {path}: expected an object")
            items = body.get(key) or []
            yield from items
            seen += len(items)
            total = body.get("total_count")
            if not items or (total is not None and seen >= total):
                return
            page += 1

    def find_namespace(self, name: str) -> dict[str, Any]:
        for namespace in self._paginate("/namespaces", "namespaces", {"name": name}):
            if namespace.get("name") == name:
                return namespace
        raise NotFoundError(f"No such namespace: {name}", 404)

    def find_image(self, namespace_id: str, name: str) -> dict[str, Any]:
        params = {"namespace_id": namespace_id, "name": name}
        for image in self._paginate("/images", "images", params):
            if image.get("namespace_id") == namespace_id and image.get("name") == name:
                return image
        raise NotFoundError(f"No such image: {name}", 404)

    def iter_tags(self, image_id: str) -> Iterator[dict[str, Any]]:
        return self._paginate(f"/images/{image_id}/tags", "tags")

    def list_images(self, repository: Repository) -> Iterator[ImageRecord]:
        try:
            namespace_id = self.find_namespace(repository.namespace)["id"]
            image_id = self.find_image(namespace_id, repository.name)["id"]
            logger.debug(f"Resolved {repository} to image {image_id}")

            by_digest: dict[str, list[dict[str, Any]]] = {}
            for tag in self.iter_tags(image_id):
                if Status.parse(tag.get("status")) == Status.DELETING:
                    logger.debug(f"Ignoring tag '{tag.get('name')}' being deleted")
                    continue
                by_digest.setdefault(tag["digest"], []).append(tag)
        except MALFORMED_PAYLOAD_ERRORS as e:
            raise RegistryError(f"Malformed listing response for {repository}: {e!r}") from e

        for digest, tags in by_digest.items():
            try:
                record = self._record(repository, image_id, digest, tags)
            except MALFORMED_PAYLOAD_ERRORS as e:
                raise RegistryError(
                    f"Malformed tag in listing of {repository} ({digest}): {e!r}"
                ) from e
            yield record

    def _record(
        self,
        repository: Repository,
        image_id: str,
        digest: str,
        tags: list[dict[str, Any]],
    ) -> ImageRecord:
        ref = ImageRef(
            repository=repository,
            digest=digest,
            tags=tuple(t["name"] for t in tags),
            metadata={"image_id": image_id, "tag_ids": [t["id"] for t in tags]},
        )
        pushed_at = max(parse_time(t.get("updated_at") or t["created_at"]) for t in tags)
        return ImageRecord(ref, pushed_at)

    def delete_image(self, image: ImageRef) -> None:
        for tag_id in image.metadata.get("tag_ids", []):
            try:
                tag = self._get_json(f"/tags/{tag_id}")
            except NotFoundError:
                continue
            if tag.get("digest") != image.digest:
                logger.debug(
                    f"Tag '{tag.get('name')}' moved off {image.short_digest}, not deleting through it"
                )
                continue
            # force=true removes the manifest together with every tag sharing it.
            self._request("DELETE", self._url(f"/tags/{tag_id}"), params={"force": "true"})
            return
        raise NotFoundError(f"No tag points at {image.short_digest} anymore", 404)
