"""Tests for Scaleway client."""

from collections.abc import Callable
from datetime import UTC, datetime
from unittest.mock import MagicMock, patch

import pytest
import requests

from registry_prune.base import ImageRef, Repository
from registry_prune.errors import ConfigurationError, NotFoundError, RegistryError
from registry_prune.registry import ScalewayClient
from registry_prune.registry.scaleway import Status
from registry_prune.settings import Settings

ResponseFactory = Callable[..., requests.Response]
REPO = Repository("mynamespace", "myimage")

NAMESPACES = {
    "namespaces": [
        {"id": "ns-other", "name": "mynamespace-old"},
        {"id": "ns-1", "name": "mynamespace"},
    ],
    "total_count": 2,
}
IMAGES = {
    "images": [{"id": "img-1", "name": "myimage", "namespace_id": "ns-1", "size": 4096}],
    "total_count": 1,
}


def tag(tag_id: str, name: str, digest: str, updated_at: str, status: str = "ready") -> dict:
    return {
        "id": tag_id,
        "name": name,
        "image_id": "img-1",
        "status": status,
        "digest": digest,
        "created_at": "2024-01-01T00:00:00Z",
        "updated_at": updated_at,
    }


class TestScalewayClient:
    def test_from_settings_with_env_vars(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("SCW_TOKEN", "env-token")
        monkeypatch.setenv("SCW_REGION", "nl-ams")

        client = ScalewayClient.from_settings(Settings())

        assert client.token.get_secret_value() == "env-token"
        assert client.region == "nl-ams"
        assert client.endpoint == "https://api.scaleway.com/registry/v1/regions/nl-ams"
        assert client.max_retries == 3

    def test_from_settings_default_region(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("SCW_TOKEN", "env-token")
        client = ScalewayClient.from_settings(Settings())
        assert client.region == "fr-par"

    def test_from_settings_missing_token(self) -> None:
        with pytest.raises(ConfigurationError, match="SCW_TOKEN"):
            ScalewayClient.from_settings(Settings())

    def test_headers_setup(self) -> None:
        client = ScalewayClient("token123", "fr-par", api_url="http://localhost:8080/")
        assert client.session.headers["X-Auth-Token"] == "token123"
        assert client.endpoint == "http://localhost:8080/regions/fr-par"

    def test_token_is_not_exposed(self) -> None:
        client = ScalewayClient("token123", "fr-par")
        assert "token123" not in repr(client.token)
        assert "token123" not in str(client.token)

    def test_list_images_groups_tags_by_digest(self, make_response: ResponseFactory) -> None:
        client = ScalewayClient("token", "fr-par")
        responses = [
            make_response(body=NAMESPACES),
            make_response(body=IMAGES),
            make_response(
                body={
                    "tags": [
                        tag("t1", "latest", "sha256:aaa", "2024-01-03T00:00:00Z"),
                        tag("t2", "v1", "sha256:aaa", "2024-01-02T00:00:00Z"),
                    ],
                    "total_count": 4,
                }
            ),
            make_response(
                body={
                    "tags": [
                        tag("t3", "v0", "sha256:bbb", "2023-12-01T00:00:00Z"),
                        tag("t4", "gone", "sha256:ccc", "2023-11-01T00:00:00Z", "deleting"),
                    ],
                    "total_count": 4,
                }
            ),
        ]

        with patch.object(client.session, "request", side_effect=responses) as mock_request:
            images = list(client.list_images(REPO))

        assert mock_request.call_count == 4
        tag_calls = mock_request.call_args_list[2:]
        assert tag_calls[0].args[1].endswith("/images/img-1/tags")
        assert [c.kwargs["params"]["page"] for c in tag_calls] == [1, 2]
        assert mock_request.call_args_list[0].kwargs["params"]["name"] == "mynamespace"

        assert [i.digest for i in images] == ["sha256:aaa", "sha256:bbb"]
        assert images[0].tags == ("latest", "v1")
        assert images[0].pushed_at == datetime(2024, 1, 3, tzinfo=UTC)
        assert images[0].ref.metadata["tag_ids"] == ["t1", "t2"]
        assert images[0].ref.repository == REPO

    def test_list_images_stops_on_empty_page(self, make_response: ResponseFactory) -> None:
        client = ScalewayClient("token", "fr-par")
        responses = [
            make_response(body=NAMESPACES),
            make_response(body=IMAGES),
            make_response(body={"tags": [tag("t1", "latest", "sha256:aaa", "2024-01-03T00:00:00Z")]}),
            make_response(body={"tags": []}),
        ]
        with patch.object(client.session, "request", side_effect=responses):
            images = list(client.list_images(REPO))
        assert len(images) == 1

    def test_list_images_no_such_namespace(self, make_response: ResponseFactory) -> None:
        client = ScalewayClient("token", "fr-par")
        with patch.object(
            client.session,
            "request",
            return_value=make_response(body={"namespaces": [], "total_count": 0}),
        ):
            with pytest.raises(NotFoundError, match="No such namespace"):
                list(client.list_images(REPO))

    def test_list_images_no_such_image(self, make_response: ResponseFactory) -> None:
        client = ScalewayClient("token", "fr-par")
        responses = [
            make_response(body=NAMESPACES),
            make_response(
                body={
                    "images": [{"id": "img-9", "name": "myimage", "namespace_id": "ns-other"}],
                    "total_count": 1,
                }
            ),
        ]
        with patch.object(client.session, "request", side_effect=responses):
            with pytest.raises(NotFoundError, match="No such image"):
                list(client.list_images(REPO))

    def test_list_images_non_json_page(self, make_response: ResponseFactory) -> None:
        client = ScalewayClient("token", "fr-par")
        proxy_page = make_response()
        proxy_page._content = b"<html>proxy</html>"
        with patch.object(client.session, "request", side_effect=[make_response(body=NAMESPACES), proxy_page]):
            with pytest.raises(RegistryError, match="not valid JSON"):
                list(client.list_images(REPO))

    @pytest.mark.parametrize(
        "bad_tag",
        [
            {"id": "t1", "name": "latest", "status": "ready"},
            tag("t1", "latest", "sha256:aaa", "garbage"),
            "latest",
        ],
    )
    def test_list_images_malformed_tag(self, make_response: ResponseFactory, bad_tag: object) -> None:
        client = ScalewayClient("token", "fr-par")
        responses = [
            make_response(body=NAMESPACES),
            make_response(body=IMAGES),
            make_response(body={"tags": [bad_tag], "total_count": 1}),
        ]
        with patch.object(client.session, "request", side_effect=responses):
            with pytest.raises(RegistryError, match="Malformed"):
                list(client.list_images(REPO))

    def test_delete_image_by_digest(self, make_response: ResponseFactory) -> None:
        client = ScalewayClient("token", "fr-par")
        image = ImageRef(REPO, "sha256:aaa", ("latest", "v1"), {"tag_ids": ["t1", "t2"]})
        responses = [
            make_response(body=tag("t1", "latest", "sha256:aaa", "2024-01-03T00:00:00Z")),
            make_response(body=tag("t1", "latest", "sha256:aaa", "2024-01-03T00:00:00Z")),
        ]

        with patch.object(client.session, "request", side_effect=responses) as mock_request:
            client.delete_image(image)

        method, url = mock_request.call_args.args
        assert method == "DELETE"
        assert url.endswith("/tags/t1")
        assert mock_request.call_args.kwargs["params"] == {"force": "true"}

    def test_delete_image_skips_moved_tag(self, make_response: ResponseFactory) -> None:
        client = ScalewayClient("token", "fr-par")
        image = ImageRef(REPO, "sha256:aaa", ("latest", "v1"), {"tag_ids": ["t1", "t2"]})
        responses = [
            make_response(body=tag("t1", "latest", "sha256:new", "2024-02-01T00:00:00Z")),
            make_response(body=tag("t2", "v1", "sha256:aaa", "2024-01-02T00:00:00Z")),
            make_response(body=tag("t2", "v1", "sha256:aaa", "2024-01-02T00:00:00Z")),
        ]

        with patch.object(client.session, "request", side_effect=responses) as mock_request:
            client.delete_image(image)

        assert mock_request.call_count == 3
        assert mock_request.call_args.args == ("DELETE", client._url("/tags/t2"))

    def test_delete_image_already_gone(self, make_response: ResponseFactory) -> None:
        client = ScalewayClient("token", "fr-par")
        image = ImageRef(REPO, "sha256:aaa", ("latest",), {"tag_ids": ["t1"]})
        with patch.object(client.session, "request", return_value=make_response(404)):
            with pytest.raises(NotFoundError):
                client.delete_image(image)

    def test_api_error_message(self, make_response: ResponseFactory) -> None:
        client = ScalewayClient("token", "fr-par", sleep=MagicMock())
        response = make_response(400, body={"message": "invalid argument(s)"})
        with patch.object(client.session, "request", return_value=response):
            with pytest.raises(RegistryError, match="invalid argument"):
                list(client.list_images(REPO))


class TestStatus:
    def test_parse(self) -> None:
        assert Status.parse("ready") == Status.READY
        assert Status.parse("deleting") == Status.DELETING
        assert Status.parse("bogus") == Status.UNKNOWN
        assert Status.parse(None) == Status.UNKNOWN
