"""
Content-addressed media stores.

LocalMediaStore keeps blobs on disk under their sha256; KuboMediaStore
talks to an IPFS Kubo node over its HTTP API. Both are write-once:
delete() is inherited from MediaStore and never reclaims anything.
"""

import hashlib
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, Optional

import httpx

from ledger_saga.config.loader import HealthConfig
from ledger_saga.core.errors import UploadError
from ledger_saga.storage.models import MediaRef
from .base import MediaStore

logger = logging.getLogger(__name__)

URI_SCHEME = "ipfs://"


def content_id(ref: str) -> str:
    """Extract the content id from an ipfs:// uri, a gateway url or a bare id."""
    if ref.startswith(URI_SCHEME):
        return ref[len(URI_SCHEME):].split("/", 1)[0]
    if "/ipfs/" in ref:
        return ref.split("/ipfs/", 1)[1].split("/", 1)[0].split("?", 1)[0]
    return ref


class LocalMediaStore(MediaStore):
    """Content-addressed blobs in a local directory.

    Layout: <directory>/<sha256> plus <sha256>.meta.json holding the
    content type and tags of the first upload.
    """

    def __init__(self, directory: str, health_config: Optional[HealthConfig] = None):
        super().__init__(health_config)
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)

    def _probe(self) -> Optional[Dict[str, Any]]:
        if not self.directory.is_dir():
            raise OSError(f"media directory missing: {self.directory}")
        if not os.access(self.directory, os.W_OK):
            raise OSError(f"media directory not writable: {self.directory}")
        return {"directory": str(self.directory)}

    def get_config(self) -> Dict[str, Any]:
        return {"backend": "local", "directory": str(self.directory)}

    def upload(self, content: bytes, content_type: str, tags: Optional[Dict[str, str]] = None) -> MediaRef:
        digest = hashlib.sha256(content).hexdigest()
        target = self.directory / digest
        try:
            if not target.exists():
                fd, tmp_path = tempfile.mkstemp(dir=str(self.directory), prefix=".upload-")
                with os.fdopen(fd, "wb") as f:
                    f.write(content)
                os.replace(tmp_path, target)
                meta = {"content_type": content_type, "tags": dict(tags or {})}
                (self.directory / f"{digest}.meta.json").write_text(json.dumps(meta), encoding="utf-8")
        except OSError as e:
            raise UploadError(f"Failed to write media blob: {e}", code="io_error") from e
        logger.debug("stored %d bytes as %s", len(content), digest)
        return MediaRef(uri=f"{URI_SCHEME}{digest}", content_hash=digest, size=len(content))

    def resolve_url(self, ref: str) -> str:
        return (self.directory / content_id(ref)).resolve().as_uri()

    def is_reachable(self, ref: str) -> bool:
        return (self.directory / content_id(ref)).is_file()

    def read(self, ref: str) -> bytes:
        return (self.directory / content_id(ref)).read_bytes()


class KuboMediaStore(MediaStore):
    """IPFS Kubo node reached through its RPC API, read through a gateway."""

    def __init__(
        self,
        api_url: str,
        gateway_url: str,
        health_config: Optional[HealthConfig] = None,
        api_token: Optional[str] = None,
        client: Optional[httpx.Client] = None,
    ):
        super().__init__(health_config)
        self.api_url = api_url.rstrip("/")
        self.gateway_url = gateway_url.rstrip("/")
        self._has_token = bool(api_token)
        headers = {"Authorization": f"Bearer {api_token}"} if api_token else {}
        self._client = client or httpx.Client(timeout=self.health_config.timeout_s, headers=headers)

    def close(self) -> None:
        self._client.close()

    def _probe(self) -> Optional[Dict[str, Any]]:
        response = self._client.post(f"{self.api_url}/api/v0/version")
        response.raise_for_status()
        return {"version": response.json().get("Version")}

    def get_config(self) -> Dict[str, Any]:
        return {
            "backend": "kubo",
            "api_url": self.api_url,
            "gateway_url": self.gateway_url,
            "has_token": self._has_token,
        }

    def upload(self, content: bytes, content_type: str, tags: Optional[Dict[str, str]] = None) -> MediaRef:
        digest = hashlib.sha256(content).hexdigest()
        try:
            response = self._client.post(
                f"{self.api_url}/api/v0/add",
                params={"pin": "true", "cid-version": "1"},
                files={"file": (digest, content, content_type)},
            )
        except httpx.HTTPError as e:
            raise UploadError(f"Upload transport failure: {e}", code="transport") from e

        if response.status_code in (401, 403):
            raise UploadError("Media node rejected credentials", code="auth")
        if response.status_code >= 400:
            raise UploadError(
                f"Media node returned HTTP {response.status_code}", code=f"http_{response.status_code}"
            )

        try:
            cid = response.json()["Hash"]
        except (ValueError, KeyError) as e:
            raise UploadError("Malformed response from media node", code="bad_response") from e

        if tags:
            logger.debug("uploaded %s with tags %s", cid, tags)
        return MediaRef(uri=f"{URI_SCHEME}{cid}", content_hash=digest, size=len(content))

    def resolve_url(self, ref: str) -> str:
        return f"{self.gateway_url}/ipfs/{content_id(ref)}"

    def is_reachable(self, ref: str) -> bool:
        try:
            response = self._client.head(self.resolve_url(ref))
        except httpx.HTTPError as e:
            logger.info("media %s unreachable: %s", ref, e)
            return False
        return response.status_code < 400
