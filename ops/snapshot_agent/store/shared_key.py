"""
Self-signed HTTP object store client.

Talks to the blob service REST API directly with httpx and computes the
shared-key signature itself (see signing.py). This is the client used in
minimal container images where the management CLI is not installed.

Operations:
    list      GET    /{container}?restype=container&comp=list&prefix=...&marker=...
    upload    PUT    /{container}/{key}   (x-ms-blob-type: BlockBlob)
    download  GET    /{container}/{key}
    delete    DELETE /{container}/{key}

Invariants:
    - Every request carries x-ms-date, x-ms-version and Authorization
    - Any non-2xx response raises StoreRequestError with the body attached
    - list() follows NextMarker until the listing is exhausted
"""

from __future__ import annotations

import logging
import xml.etree.ElementTree as ET
from datetime import datetime
from email.utils import parsedate_to_datetime
from urllib.parse import quote, urlsplit

import httpx

from .base import ObjectInfo, ObjectNotFoundError, StoreError, StoreRequestError
from .signing import API_VERSION, SharedKeySigner, SignableRequest

logger = logging.getLogger(__name__)

UPLOAD_CONTENT_TYPE = "application/x-tar"


def parse_list_response(body: bytes) -> tuple[list[ObjectInfo], str | None]:
    """Parse a List Blobs XML response.

    Only Blob/Name, Blob/Properties/Last-Modified, Blob/Properties/Content-Length
    and NextMarker are read; the rest of the document is ignored.

    Returns:
        Tuple of (objects, next_marker). next_marker is None on the last page.

    Raises:
        StoreError: If the body is not well-formed XML
    """
    try:
        root = ET.fromstring(body)
    except ET.ParseError as e:
        raise StoreError(f"Malformed list response: {e}") from e

    objects = []
    for blob in root.iter("Blob"):
        name = blob.findtext("Name")
        if not name:
            continue
        last_modified: datetime | None = None
        size: int | None = None
        props = blob.find("Properties")
        if props is not None:
            raw_modified = props.findtext("Last-Modified")
            if raw_modified:
                try:
                    last_modified = parsedate_to_datetime(raw_modified)
                except (TypeError, ValueError):
                    logger.debug(f"Unparseable Last-Modified for {name}: {raw_modified}")
            raw_size = props.findtext("Content-Length")
            if raw_size and raw_size.isdigit():
                size = int(raw_size)
        objects.append(ObjectInfo(key=name, last_modified=last_modified, size=size))

    next_marker = (root.findtext("NextMarker") or "").strip() or None
    return objects, next_marker


class SharedKeyObjectStore:
    """ObjectStore implementation over the blob REST API with shared-key auth.

    Attributes:
        account_name: Storage account name
        container: Container holding the archives
        endpoint: Blob service endpoint URL

    Example:
        >>> store = SharedKeyObjectStore("acct", key, "pds-sqlite")
        >>> await store.upload("snapshots/default/snap-20250101-020000.tar.zst", data)
        >>> await store.close()
    """

    def __init__(
        self,
        account_name: str,
        account_key: str,
        container: str,
        endpoint: str | None = None,
        timeout_seconds: float = 300.0,
        api_version: str = API_VERSION,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            account_name: Storage account name
            account_key: Base64-encoded shared key
            container: Container name
            endpoint: Blob service endpoint (defaults to the public endpoint)
            timeout_seconds: Per-request timeout
            api_version: Value of the x-ms-version header
            transport: Optional httpx transport (used by tests)
        """
        self.account_name = account_name
        self.container = container
        self.endpoint = (endpoint or f"https://{account_name}.blob.core.windows.net").rstrip("/")
        self._signer = SharedKeySigner(account_name, account_key, api_version=api_version)
        parts = urlsplit(self.endpoint)
        self._origin = f"{parts.scheme}://{parts.netloc}"
        # Path-style endpoints (emulators) put the account in the URL path too
        self._base_path = parts.path.rstrip("/")
        self._client = httpx.AsyncClient(timeout=timeout_seconds, transport=transport)

    def _container_path(self) -> str:
        return f"{self._base_path}/{self.container}"

    def _blob_path(self, key: str) -> str:
        return f"{self._container_path()}/{quote(key, safe='/~')}"

    async def _send(
        self,
        method: str,
        path: str,
        query: dict[str, str] | None = None,
        headers: dict[str, str] | None = None,
        content: bytes | None = None,
    ) -> httpx.Response:
        request = SignableRequest(
            method=method,
            resource_path=path,
            query=query or {},
            headers=headers or {},
        )
        signed_headers = self._signer.sign(request)
        url = f"{self._origin}{path}"
        try:
            return await self._client.request(
                method,
                url,
                params=query or None,
                headers=signed_headers,
                content=content,
            )
        except httpx.HTTPError as e:
            raise StoreError(f"{method} {path} failed: {e}") from e

    async def list(self, prefix: str) -> list[ObjectInfo]:
        """List all blobs under prefix, following continuation markers."""
        objects: list[ObjectInfo] = []
        marker: str | None = None

        while True:
            query = {"restype": "container", "comp": "list", "prefix": prefix}
            if marker:
                query["marker"] = marker

            response = await self._send("GET", self._container_path(), query=query)
            if response.status_code != 200:
                raise StoreRequestError(
                    f"Failed to list blobs under '{prefix}'",
                    response.status_code,
                    response.text,
                )

            page, marker = parse_list_response(response.content)
            objects.extend(page)
            if not marker:
                break

        logger.debug(f"Listed {len(objects)} blobs under {prefix}")
        return objects

    async def upload(self, key: str, data: bytes) -> None:
        """Upload data as a block blob."""
        headers = {
            "Content-Length": str(len(data)),
            "Content-Type": UPLOAD_CONTENT_TYPE,
            "x-ms-blob-type": "BlockBlob",
        }
        response = await self._send("PUT", self._blob_path(key), headers=headers, content=data)
        if not response.is_success:
            raise StoreRequestError(f"Failed to upload '{key}'", response.status_code, response.text)

    async def download(self, key: str) -> bytes:
        """Download a blob's content."""
        response = await self._send("GET", self._blob_path(key))
        if response.status_code == 404:
            raise ObjectNotFoundError(f"Blob not found: {key}")
        if not response.is_success:
            raise StoreRequestError(
                f"Failed to download '{key}'", response.status_code, response.text
            )
        return response.content

    async def delete(self, key: str) -> None:
        """Delete a blob."""
        response = await self._send("DELETE", self._blob_path(key))
        if response.status_code == 404:
            raise ObjectNotFoundError(f"Blob not found: {key}")
        if not response.is_success:
            raise StoreRequestError(f"Failed to delete '{key}'", response.status_code, response.text)

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()
