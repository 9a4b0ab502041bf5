"""Page document storage.

Uploaded PDFs are stored once and referenced by URL from each record. Two
backends are provided: a local directory (served by the app under
``/documents``) and a remote blob service spoken to over HTTP.
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Protocol
from urllib.parse import quote, unquote

import httpx

from esglabel.config import Settings
from esglabel.errors import StorageError, ValidationError

log = logging.getLogger(__name__)

_TIMEOUT = 60.0


class DocumentStore(Protocol):
    def store(self, name: str, data: bytes) -> str: ...

    def list(self) -> list[str]: ...

    def delete(self, url: str) -> None: ...

    def close(self) -> None: ...


def _safe_name(name: str) -> str:
    cleaned = Path(name.replace("\\", "/")).name.strip()
    if not cleaned or cleaned in (".", ".."):
        raise ValidationError(f"Invalid document name: {name!r}")
    return cleaned


# ---------------------------------------------------------------------------
# Local filesystem
# ---------------------------------------------------------------------------


class LocalDocumentStore:
    """Name-addressed storage in a directory; re-storing a name overwrites it."""

    def __init__(self, root: str | Path, base_url: str = "/documents"):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)
        self.base_url = base_url.rstrip("/")

    def _url_for(self, name: str) -> str:
        return f"{self.base_url}/{quote(name)}"

    def store(self, name: str, data: bytes) -> str:
        name = _safe_name(name)
        try:
            (self.root / name).write_bytes(data)
        except OSError as exc:
            raise StorageError(f"Could not write {name}", exc) from exc
        log.debug("Stored %s (%d bytes) in %s", name, len(data), self.root)
        return self._url_for(name)

    def list(self) -> list[str]:
        return [self._url_for(p.name) for p in sorted(self.root.iterdir()) if p.is_file()]

    def delete(self, url: str) -> None:
        prefix = self.base_url + "/"
        if not url.startswith(prefix):
            raise ValidationError(f"Not a document of this store: {url}")
        path = self.root / _safe_name(unquote(url[len(prefix):]))
        path.unlink(missing_ok=True)

    def close(self) -> None:
        pass


# ---------------------------------------------------------------------------
# Remote blob service
# ---------------------------------------------------------------------------


class HttpBlobStore:
    """Public-readable blob service addressed by pathname.

    ``PUT {base}/{name}`` returns ``{"url": ...}``; ``GET {base}`` lists blobs
    page by page (``blobs``, ``cursor``, ``hasMore``); ``POST {base}/delete``
    removes blobs by URL. Transport and protocol failures raise StorageError.
    """

    def __init__(self, base_url: str, token: str, client: httpx.Client | None = None):
        if not base_url:
            raise ValidationError("ESGLABEL_BLOB_URL is required for the http storage backend")
        self.base_url = base_url.rstrip("/")
        self._owns_client = client is None
        self._client = client or httpx.Client(timeout=_TIMEOUT)
        self._headers = {"Authorization": f"Bearer {token}"} if token else {}

    def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            resp = self._client.request(method, url, **kwargs)
            resp.raise_for_status()
        except httpx.HTTPError as exc:
            log.error("Blob store %s %s failed: %s", method, url, exc)
            raise StorageError(f"Blob store {method} failed", exc) from exc
        return resp

    def store(self, name: str, data: bytes) -> str:
        name = _safe_name(name)
        resp = self._request(
            "PUT", f"{self.base_url}/{quote(name)}", content=data,
            headers={**self._headers, "Content-Type": "application/pdf", "x-allow-overwrite": "1"},
        )
        try:
            url = resp.json()["url"]
        except (ValueError, KeyError, TypeError) as exc:
            raise StorageError(f"Blob store returned no URL for {name}", exc) from exc
        log.info("Uploaded %s -> %s", name, url)
        return url

    def list(self) -> list[str]:
        urls: list[str] = []
        cursor: str | None = None
        while True:
            params = {"cursor": cursor} if cursor else {}
            resp = self._request("GET", self.base_url, params=params, headers=self._headers)
            try:
                body = resp.json()
                urls.extend(b["url"] for b in body.get("blobs", []))
            except (ValueError, KeyError, TypeError, AttributeError) as exc:
                raise StorageError("Blob store returned a malformed listing", exc) from exc
            cursor = body.get("cursor")
            if not body.get("hasMore") or not cursor:
                return urls

    def delete(self, url: str) -> None:
        self._request("POST", f"{self.base_url}/delete", json={"urls": [url]}, headers=self._headers)

    def close(self) -> None:
        if self._owns_client:
            self._client.close()


def make_document_store(settings: Settings) -> DocumentStore:
    if settings.storage_backend == "http":
        return HttpBlobStore(settings.blob_url, settings.blob_token)
    return LocalDocumentStore(settings.resolved_documents_dir)


def purge_documents(store: DocumentStore) -> int:
    """Delete every stored document. Returns the number removed."""
    urls = store.list()
    log.info("Deleting %d stored documents", len(urls))
    for url in urls:
        log.debug("Deleting %s", url)
        store.delete(url)
    return len(urls)
