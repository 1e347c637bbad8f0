"""HTTP client for the control-plane registration endpoint."""
from __future__ import annotations

import json
import logging

import httpx

from .. import __version__
from ..errors import InvalidRegistrationResponse, RegistrationFailed
from ..models import RegistrationRequest, RegistrationResponse

LOGGER = logging.getLogger(__name__)


class HttpRegistrationClient:
    """Submit a public key and receive a tunnel port assignment."""

    def __init__(
        self,
        url: str,
        *,
        timeout: float = 30.0,
        verify: bool = True,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        """Record the endpoint and build the underlying HTTP client."""
        self.url = url
        self._client = httpx.Client(
            timeout=timeout,
            verify=verify,
            headers={"User-Agent": f"ptunnelctl/{__version__}"},
            transport=transport,
        )

    def close(self) -> None:
        """Release pooled connections."""
        self._client.close()

    def register(self, request: RegistrationRequest) -> RegistrationResponse:
        """POST *request* and return the validated assignment."""
        LOGGER.debug("Registering %s with %s", request.hostname, self.url)
        try:
            response = self._client.post(self.url, json=request.to_payload())
        except httpx.RequestError as exc:
            raise RegistrationFailed(
                f"Failed to reach registration endpoint {self.url}: {exc}"
            ) from exc

        if not response.is_success:
            detail = response.text.strip()[:500] or "no body"
            raise RegistrationFailed(
                f"Registration endpoint returned HTTP {response.status_code}: {detail}"
            )
        try:
            payload = response.json()
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise InvalidRegistrationResponse(
                f"Registration response is not valid JSON: {exc}"
            ) from exc
        return RegistrationResponse.from_payload(payload)


__all__ = ["HttpRegistrationClient"]
