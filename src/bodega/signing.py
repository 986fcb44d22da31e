"""Chef server request signing (authentication protocol version 1.3)."""

from __future__ import annotations

import base64
import hashlib
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Optional

from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from constants import Constants

from .errors import StartupConfigurationError

TIME_FORMAT = "%Y-%m-%dT%H:%M:%SZ"


def load_private_key(pem_path: str) -> rsa.RSAPrivateKey:
    """Read and parse the client's RSA private key.

    Raises:
        StartupConfigurationError: If the file is unreadable or not an RSA PEM key.
    """
    try:
        data = Path(pem_path).read_bytes()
    except OSError as exc:
        raise StartupConfigurationError(f"Couldn't read key {pem_path}: {exc}") from exc
    try:
        key = serialization.load_pem_private_key(data, password=None)
    except (ValueError, TypeError) as exc:
        raise StartupConfigurationError(f"Failed to parse key {pem_path}: {exc}") from exc
    if not isinstance(key, rsa.RSAPrivateKey):
        raise StartupConfigurationError(f"Key {pem_path} is not an RSA private key")
    return key


def _digest_b64(data: bytes) -> str:
    return base64.b64encode(hashlib.sha256(data).digest()).decode("ascii")


def canonical_path(path: str) -> str:
    """Collapse repeated slashes and drop a trailing slash."""
    path = re.sub(r"/+", "/", path or "/")
    if len(path) > 1 and path.endswith("/"):
        path = path[:-1]
    return path


class RequestSigner:
    """Produces the X-Ops-* headers for one Chef API request."""

    def __init__(self, client_name: str, private_key: rsa.RSAPrivateKey):
        self._client_name = client_name
        self._key = private_key

    def canonical_request(
        self, method: str, path: str, content_hash: str, timestamp: str
    ) -> str:
        return "\n".join([
            f"Method:{method.upper()}",
            f"Path:{canonical_path(path)}",
            f"X-Ops-Content-Hash:{content_hash}",
            f"X-Ops-Sign:version={Constants.CHEF_SIGN_VERSION}",
            f"X-Ops-Timestamp:{timestamp}",
            f"X-Ops-UserId:{self._client_name}",
            f"X-Ops-Server-API-Version:{Constants.CHEF_SERVER_API_VERSION}",
        ])

    def sign(
        self,
        method: str,
        path: str,
        body: bytes = b"",
        now: Optional[datetime] = None,
    ) -> Dict[str, str]:
        """Return the authentication headers for a request.

        Args:
            method: HTTP method.
            path: URL path (no query string).
            body: Request body bytes.
            now: Override for the signing time.
        """
        timestamp = (now or datetime.now(timezone.utc)).strftime(TIME_FORMAT)
        content_hash = _digest_b64(body)
        canonical = self.canonical_request(method, path, content_hash, timestamp)
        signature = self._key.sign(canonical.encode("utf-8"), padding.PKCS1v15(), hashes.SHA256())
        encoded = base64.b64encode(signature).decode("ascii")

        headers = {
            "X-Ops-Sign": f"algorithm=sha256;version={Constants.CHEF_SIGN_VERSION};",
            "X-Ops-Userid": self._client_name,
            "X-Ops-Timestamp": timestamp,
            "X-Ops-Content-Hash": content_hash,
            "X-Ops-Server-API-Version": Constants.CHEF_SERVER_API_VERSION,
        }
        width = Constants.CHEF_AUTH_HEADER_WIDTH
        for index in range(0, len(encoded), width):
            headers[f"X-Ops-Authorization-{index // width + 1}"] = encoded[index:index + width]
        return headers
