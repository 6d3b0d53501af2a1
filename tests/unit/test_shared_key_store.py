"""
Unit tests for the self-signed HTTP object store client.

Tests cover:
- List Blobs XML parsing
- Listing pagination via NextMarker
- Upload, download and delete requests
- Signature on every request
- Error mapping for non-2xx responses
"""

import base64

import httpx
import pytest

from ops.snapshot_agent.store.base import ObjectNotFoundError, StoreError, StoreRequestError
from ops.snapshot_agent.store.shared_key import SharedKeyObjectStore, parse_list_response
from ops.snapshot_agent.store.signing import SignableRequest, compute_signature, string_to_sign

ACCOUNT = "acct"
KEY = base64.b64encode(b"0123456789abcdef0123456789abcdef").decode("ascii")
PREFIX = "snapshots/default/"


def list_page(names, next_marker=""):
    blobs = "".join(
        f"<Blob><Name>{name}</Name><Properties>"
        f"<Last-Modified>Wed, 01 Jan 2025 02:00:05 GMT</Last-Modified>"
        f"<Content-Length>{size}</Content-Length>"
        f"</Properties></Blob>"
        for name, size in names
    )
    return (
        '<?xml version="1.0" encoding="utf-8"?>'
        f'<EnumerationResults ServiceEndpoint="https://{ACCOUNT}.blob.core.windows.net/" '
        'ContainerName="pds-sqlite">'
        f"<Prefix>{PREFIX}</Prefix><Blobs>{blobs}</Blobs>"
        f"<NextMarker>{next_marker}</NextMarker></EnumerationResults>"
    ).encode("utf-8")


def assert_signed(request: httpx.Request) -> None:
    """Recompute the signature from what was actually sent."""
    signable = SignableRequest(
        method=request.method,
        resource_path=request.url.path,
        query=dict(request.url.params),
        headers=dict(request.headers),
    )
    expected = compute_signature(KEY, string_to_sign(ACCOUNT, signable))
    assert request.headers["authorization"] == f"SharedKey {ACCOUNT}:{expected}"
    assert request.headers["x-ms-version"] == "2021-06-08"
    assert request.headers["x-ms-date"].endswith(" GMT")


@pytest.fixture
def requests_seen():
    return []


def make_store(handler, requests_seen, endpoint=None):
    def recording(request):
        requests_seen.append(request)
        return handler(request)

    return SharedKeyObjectStore(
        ACCOUNT,
        KEY,
        "pds-sqlite",
        endpoint=endpoint,
        transport=httpx.MockTransport(recording),
    )


class TestParseListResponse:
    """Tests for List Blobs XML parsing."""

    def test_parses_names_sizes_and_marker(self):
        """Name, Content-Length, Last-Modified and NextMarker are read."""
        objects, marker = parse_list_response(
            list_page([(f"{PREFIX}snap-20250101-020000.tar.zst", 2048)], "m2")
        )
        assert marker == "m2"
        assert len(objects) == 1
        assert objects[0].key == f"{PREFIX}snap-20250101-020000.tar.zst"
        assert objects[0].size == 2048
        assert objects[0].last_modified.year == 2025

    def test_empty_marker_is_last_page(self):
        """An empty NextMarker ends the listing."""
        objects, marker = parse_list_response(list_page([]))
        assert objects == []
        assert marker is None

    def test_malformed_xml(self):
        """Garbage bodies raise StoreError."""
        with pytest.raises(StoreError):
            parse_list_response(b"<EnumerationResults><Blobs>")


class TestSharedKeyList:
    """Tests for listing."""

    @pytest.mark.asyncio
    async def test_follows_next_marker(self, requests_seen):
        """Pages are fetched until NextMarker is empty."""

        def handler(request):
            if request.url.params.get("marker") == "page2":
                return httpx.Response(200, content=list_page([(f"{PREFIX}snap-b.tar.zst", 20)]))
            return httpx.Response(
                200, content=list_page([(f"{PREFIX}snap-a.tar.zst", 10)], "page2")
            )

        store = make_store(handler, requests_seen)
        objects = await store.list(PREFIX)
        await store.close()

        assert [o.key for o in objects] == [f"{PREFIX}snap-a.tar.zst", f"{PREFIX}snap-b.tar.zst"]
        assert len(requests_seen) == 2
        first, second = requests_seen
        assert first.method == "GET"
        assert first.url.path == "/pds-sqlite"
        assert first.url.params["restype"] == "container"
        assert first.url.params["comp"] == "list"
        assert first.url.params["prefix"] == PREFIX
        assert "marker" not in first.url.params
        assert second.url.params["marker"] == "page2"
        for request in requests_seen:
            assert_signed(request)

    @pytest.mark.asyncio
    async def test_default_endpoint(self, requests_seen):
        """Without an endpoint the public account host is used."""
        store = make_store(lambda r: httpx.Response(200, content=list_page([])), requests_seen)
        await store.list(PREFIX)
        await store.close()
        assert requests_seen[0].url.host == f"{ACCOUNT}.blob.core.windows.net"
        assert requests_seen[0].url.scheme == "https"

    @pytest.mark.asyncio
    async def test_path_style_endpoint(self, requests_seen):
        """Emulator endpoints keep their path in both URL and signature."""
        store = make_store(
            lambda r: httpx.Response(200, content=list_page([])),
            requests_seen,
            endpoint="http://127.0.0.1:10000/acct",
        )
        await store.list(PREFIX)
        await store.close()
        assert requests_seen[0].url.path == "/acct/pds-sqlite"
        assert_signed(requests_seen[0])

    @pytest.mark.asyncio
    async def test_non_2xx_raises_with_body(self, requests_seen):
        """A 403 surfaces status and body."""
        body = "<Error><Code>AuthenticationFailed</Code></Error>"
        store = make_store(lambda r: httpx.Response(403, text=body), requests_seen)
        with pytest.raises(StoreRequestError) as exc_info:
            await store.list(PREFIX)
        await store.close()
        assert exc_info.value.status == 403
        assert "AuthenticationFailed" in exc_info.value.body


class TestSharedKeyBlobOperations:
    """Tests for upload, download and delete."""

    @pytest.mark.asyncio
    async def test_upload(self, requests_seen):
        """Upload is a signed BlockBlob PUT with the tar content type."""
        store = make_store(lambda r: httpx.Response(201), requests_seen)
        key = f"{PREFIX}snap-20250101-020000.tar.zst"
        await store.upload(key, b"archive-bytes")
        await store.close()

        request = requests_seen[0]
        assert request.method == "PUT"
        assert request.url.path == f"/pds-sqlite/{key}"
        assert request.headers["x-ms-blob-type"] == "BlockBlob"
        assert request.headers["content-type"] == "application/x-tar"
        assert request.headers["content-length"] == str(len(b"archive-bytes"))
        assert request.content == b"archive-bytes"
        assert_signed(request)

    @pytest.mark.asyncio
    async def test_upload_failure(self, requests_seen):
        """A 500 on upload raises StoreRequestError."""
        store = make_store(lambda r: httpx.Response(500, text="boom"), requests_seen)
        with pytest.raises(StoreRequestError):
            await store.upload(f"{PREFIX}snap-x.tar.zst", b"data")
        await store.close()

    @pytest.mark.asyncio
    async def test_download(self, requests_seen):
        """Download returns the response body."""
        store = make_store(lambda r: httpx.Response(200, content=b"payload"), requests_seen)
        data = await store.download(f"{PREFIX}snap-x.tar.zst")
        await store.close()
        assert data == b"payload"
        assert requests_seen[0].method == "GET"
        assert_signed(requests_seen[0])

    @pytest.mark.asyncio
    async def test_download_missing(self, requests_seen):
        """404 maps to ObjectNotFoundError."""
        store = make_store(lambda r: httpx.Response(404), requests_seen)
        with pytest.raises(ObjectNotFoundError):
            await store.download(f"{PREFIX}missing.tar.zst")
        await store.close()

    @pytest.mark.asyncio
    async def test_delete(self, requests_seen):
        """Delete is a signed DELETE on the blob path."""
        store = make_store(lambda r: httpx.Response(202), requests_seen)
        await store.delete(f"{PREFIX}snap-x.tar.zst")
        await store.close()
        assert requests_seen[0].method == "DELETE"
        assert requests_seen[0].url.path == f"/pds-sqlite/{PREFIX}snap-x.tar.zst"
        assert_signed(requests_seen[0])

    @pytest.mark.asyncio
    async def test_transport_error_wrapped(self, requests_seen):
        """Connection errors become StoreError."""

        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        store = make_store(handler, requests_seen)
        with pytest.raises(StoreError):
            await store.delete(f"{PREFIX}snap-x.tar.zst")
        await store.close()
