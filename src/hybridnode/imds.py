"""Minimal IMDSv2 client used for user-data and instance enrichment."""
from __future__ import annotations

import json
from dataclasses import dataclass, field

import requests

TOKEN_HEADER = "X-aws-ec2-metadata-token"
TOKEN_TTL_HEADER = "X-aws-ec2-metadata-token-ttl-seconds"


class ImdsError(RuntimeError):
    """Raised when the instance metadata service cannot be queried."""


@dataclass(slots=True)
class ImdsClient:
    """Fetch instance metadata with a session token."""

    endpoint: str = "http://169.254.169.254"
    timeout: float = 2.0
    token_ttl: int = 21600
    session: requests.Session = field(default_factory=requests.Session)
    _token: str | None = field(default=None, init=False, repr=False)

    def user_data(self) -> str:
        """Return the raw user-data string."""
        return self.get("user-data")

    def metadata(self, name: str) -> str:
        """Return the ``meta-data/<name>`` property."""
        return self.get(f"meta-data/{name}")

    def identity_document(self) -> dict[str, object]:
        """Return the parsed instance identity document."""
        raw = self.get("dynamic/instance-identity/document")
        try:
            document = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ImdsError(f"Malformed instance identity document: {exc}") from exc
        if not isinstance(document, dict):
            raise ImdsError("Instance identity document must be a JSON object.")
        return document

    def get(self, path: str) -> str:
        """Return the body of ``/latest/<path>``."""
        url = f"{self.endpoint.rstrip('/')}/latest/{path}"
        try:
            response = self.session.get(
                url,
                headers={TOKEN_HEADER: self._session_token()},
                timeout=self.timeout,
            )
            response.raise_for_status()
        except requests.RequestException as exc:
            raise ImdsError(f"GET {url} failed: {exc}") from exc
        return response.text

    def close(self) -> None:
        """Release pooled connections."""
        self.session.close()

    # ------------------------------------------------------------------
    def _session_token(self) -> str:
        if self._token is not None:
            return self._token
        url = f"{self.endpoint.rstrip('/')}/latest/api/token"
        try:
            response = self.session.put(
                url,
                headers={TOKEN_TTL_HEADER: str(self.token_ttl)},
                timeout=self.timeout,
            )
            response.raise_for_status()
        except requests.RequestException as exc:
            raise ImdsError(f"PUT {url} failed: {exc}") from exc
        self._token = response.text
        return self._token


__all__ = ["ImdsClient", "ImdsError"]
