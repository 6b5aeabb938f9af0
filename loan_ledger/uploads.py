"""
Receipt Upload Client Module

Upload service collaborator: stores a receipt image in a folder and returns
its public URL. The HTTP client speaks to an image host that accepts a
multipart upload and answers with JSON containing `secure_url` or `url`.
"""

import httpx
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, Optional

from .exceptions import DependencyError
from .logging_config import get_logger

logger = get_logger("loan_ledger.uploads")


@dataclass(frozen=True)
class ReceiptFile:
    """Receipt image supplied with a payment"""
    filename: str
    content: bytes
    content_type: str = "image/jpeg"

    def __post_init__(self):
        if not self.content:
            raise ValueError("Receipt file is empty")


class UploadService(ABC):
    """Upload(file, folder) -> URL"""

    @abstractmethod
    def upload(self, file: ReceiptFile, folder: str) -> str:
        """
        Upload a file and return its URL.

        Raises:
            DependencyError: If the upload did not complete
        """
        pass

    def close(self) -> None:
        pass


class HttpUploadService(UploadService):
    """REST client for the receipt image host"""

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        timeout: float = 10.0,
        transport: Optional[httpx.BaseTransport] = None
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self._client = httpx.Client(timeout=timeout, transport=transport)

    def upload(self, file: ReceiptFile, folder: str) -> str:
        headers = {}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        start = time.time()
        try:
            response = self._client.post(
                f"{self.base_url}/upload",
                files={"file": (file.filename, file.content, file.content_type)},
                data={"folder": folder},
                headers=headers
            )
        except httpx.HTTPError as e:
            logger.error(f"Receipt upload to {self.base_url} failed: {e}")
            raise DependencyError(
                "Receipt upload failed", operation="upload", cause=e,
                folder=folder, filename=file.filename
            ) from e

        latency_ms = (time.time() - start) * 1000

        if response.status_code >= 400:
            logger.warning(f"Upload service returned {response.status_code}: {response.text}")
            raise DependencyError(
                f"Receipt upload rejected with HTTP {response.status_code}",
                operation="upload", folder=folder, filename=file.filename,
                status_code=response.status_code
            )

        try:
            data = response.json()
        except ValueError as e:
            raise DependencyError(
                "Upload service returned a non-JSON body", operation="upload", cause=e, folder=folder
            ) from e

        url = data.get("secure_url") or data.get("url")
        if not url:
            raise DependencyError(
                "Upload service response did not include a URL", operation="upload", folder=folder
            )

        logger.debug(f"Uploaded {file.filename} to {folder} in {latency_ms:.1f}ms")
        return url

    def health_check(self) -> bool:
        """Check if the upload service is reachable"""
        try:
            r = self._client.get(f"{self.base_url}/health")
            return r.status_code == 200
        except httpx.HTTPError:
            return False

    def close(self):
        """Close the HTTP client"""
        self._client.close()


class InMemoryUploadService(UploadService):
    """Keeps uploads in memory; for development and tests"""

    def __init__(self):
        self.files: Dict[str, ReceiptFile] = {}

    def upload(self, file: ReceiptFile, folder: str) -> str:
        url = f"memory://{folder}/{uuid.uuid4().hex}-{file.filename}"
        self.files[url] = file
        return url
