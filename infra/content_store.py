"""
Content store adapter.

Pins JSON documents by content hash and fetches them back by URI. The
pinning JWT is read from the environment variable named in config.
"""

import logging
import os
from typing import Any, Dict, Optional

import requests

from core.exceptions import RateLimited

logger = logging.getLogger(__name__)

DEFAULT_PIN_URL = "https://api.pinata.cloud/pinning/pinJSONToIPFS"
DEFAULT_GATEWAY = "https://gateway.pinata.cloud/ipfs/"


class ContentStoreError(RuntimeError):
    """Content store rejected a request or returned an unusable payload."""


class ContentStore:
    """pin_json(document, label) -> uri; fetch(uri) -> document"""

    def __init__(
        self,
        pin_url: str = DEFAULT_PIN_URL,
        gateway_url: str = DEFAULT_GATEWAY,
        jwt: Optional[str] = None,
        jwt_env: str = "PINATA_JWT",
        timeout: float = 20.0,
        session: Optional[requests.Session] = None,
    ):
        self.pin_url = pin_url
        self.gateway_url = gateway_url if gateway_url.endswith("/") else gateway_url + "/"
        self.jwt = jwt if jwt is not None else os.getenv(jwt_env)
        self.jwt_env = jwt_env
        self.timeout = timeout
        self._session = session or requests.Session()

    def _raise_for(self, response: requests.Response, action: str) -> None:
        if response.status_code == 429:
            raise RateLimited(f"Too many requests while trying to {action}")
        if response.status_code >= 400:
            logger.error(f"Content store {action} failed: {response.status_code} {response.text[:200]}")
            raise ContentStoreError(f"Content store {action} failed with HTTP {response.status_code}")

    def uri_for(self, content_hash: str) -> str:
        return f"{self.gateway_url}{content_hash}"

    def pin_json(self, document: Dict[str, Any], label: str) -> str:
        """Pin a JSON document; returns its retrievable URI."""
        if not self.jwt:
            raise ContentStoreError(f"Content store credentials not configured (set {self.jwt_env})")
        response = self._session.post(
            self.pin_url,
            json={"pinataContent": document, "pinataMetadata": {"name": label}},
            headers={"Authorization": f"Bearer {self.jwt}", "Content-Type": "application/json"},
            timeout=self.timeout,
        )
        self._raise_for(response, "pin")
        content_hash = response.json().get("IpfsHash")
        if not content_hash:
            raise ContentStoreError("Pin response missing IpfsHash")
        uri = self.uri_for(content_hash)
        logger.info(f"Pinned {label} → {uri}")
        return uri

    def fetch(self, uri: str) -> Dict[str, Any]:
        """Fetch a pinned JSON document by URI or bare content hash."""
        url = uri if uri.startswith(("http://", "https://")) else self.uri_for(uri)
        response = self._session.get(url, timeout=self.timeout)
        self._raise_for(response, "fetch")
        document = response.json()
        if not isinstance(document, dict):
            raise ContentStoreError(f"Document at {url} is not a JSON object")
        return document
