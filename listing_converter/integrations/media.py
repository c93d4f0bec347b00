"""
Media importer that downloads remote images into the local media root.
"""
import hashlib
import logging
import os
import threading
from typing import Any, Dict, Optional
from urllib.parse import urlparse

import requests

from listing_converter.core.config import settings
from listing_converter.domain.imports.errors import CollaboratorError

logger = logging.getLogger(__name__)

ALLOWED_SCHEMES = ("http", "https")


class HttpMediaImporter:
    """Fetches each URL once and records it as an attachment with a numeric id."""

    def __init__(
        self,
        media_root: Optional[str] = None,
        timeout: Optional[float] = None,
        session: Optional[requests.Session] = None,
    ):
        self.media_root = media_root or settings.media_root
        self.timeout = timeout if timeout is not None else settings.media_timeout_seconds
        self.session = session or requests.Session()
        self._attachments: Dict[str, Dict[str, Any]] = {}
        self._next_id = 1
        self._lock = threading.Lock()

    def _target_path(self, url: str) -> str:
        parsed = urlparse(url)
        name = os.path.basename(parsed.path) or "image"
        digest = hashlib.sha256(url.encode("utf-8")).hexdigest()[:12]
        return os.path.join(self.media_root, f"{digest}_{name}")

    def fetch_and_attach(self, url: str) -> Dict[str, Any]:
        url = (url or "").strip()
        if urlparse(url).scheme not in ALLOWED_SCHEMES:
            raise CollaboratorError(f"Invalid media URL '{url}'")

        with self._lock:
            if url in self._attachments:
                return dict(self._attachments[url])

        try:
            response = self.session.get(url, timeout=self.timeout)
            response.raise_for_status()
        except requests.exceptions.RequestException as exc:
            logger.warning("Media download failed for %s: %s", url, exc)
            raise CollaboratorError(f"Failed to download {url}", {"error": str(exc)})

        path = self._target_path(url)
        try:
            os.makedirs(self.media_root, exist_ok=True)
            with open(path, "wb") as handle:
                handle.write(response.content)
        except OSError as exc:
            raise CollaboratorError(f"Failed to store {url}", {"error": str(exc)})

        with self._lock:
            attachment = {"id": self._next_id, "url": url, "path": path}
            self._next_id += 1
            self._attachments[url] = attachment
        logger.info("Stored media %s as attachment #%d", url, attachment["id"])
        return dict(attachment)
