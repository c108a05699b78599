"""Resource API client for property onboarding.

Endpoints used:
- POST   /properties
- PATCH  /properties/:id
- POST   /properties/:id/rooms
- POST   /properties/:id/photos/upload-url
- POST   /properties/:id/features/bulk
- DELETE /properties/:id

Byte transfers go straight to the write target returned by upload-url,
outside the API's normal request envelope.
"""

from __future__ import annotations

import logging
from typing import Any, Protocol

import httpx

from .errors import InvalidIdentifierError, ResourceAPIError, UnsupportedMediaTypeError
from .models import ALLOWED_MIME_TYPES, RemoteIds, UploadTarget, is_valid_identifier
from .payloads import create_features_payload

logger = logging.getLogger(__name__)


class ResourceAPI(Protocol):
    """Calls the finalization orchestrator makes to the remote service."""

    async def create_primary(self, kind: str, address: dict[str, Any]) -> RemoteIds: ...

    async def update_primary(self, primary_id: str, attributes: dict[str, Any]) -> None: ...

    async def create_sub_item(self, primary_id: str, payload: dict[str, Any]) -> str: ...

    async def request_upload_target(
        self, primary_id: str, file_name: str, mime_type: str, tag: str
    ) -> UploadTarget: ...

    async def transfer_bytes(self, url: str, content: bytes, mime_type: str) -> None: ...

    async def bulk_write_tags(self, primary_id: str, tags: list[str]) -> None: ...

    async def delete_primary(self, primary_id: str) -> None: ...


class HttpResourceAPI:
    """ResourceAPI implementation over HTTP."""

    def __init__(
        self,
        base_url: str = "http://localhost:3000/api",
        timeout: float = 30.0,
        headers: dict[str, str] | None = None,
        allowed_mime_types: tuple[str, ...] = ALLOWED_MIME_TYPES,
    ):
        """Initialize the API client.

        Args:
            base_url: Base URL of the Resource API
            timeout: Per-request timeout in seconds
            headers: Extra headers sent with every API call (not with transfers)
            allowed_mime_types: Mime types accepted for upload targets
        """
        self.base_url = base_url.rstrip("/")
        self.allowed_mime_types = allowed_mime_types
        self.client = httpx.AsyncClient(timeout=timeout, headers=headers or {})
        # Separate client: write targets are pre-signed and must not see API headers.
        self.transfer_client = httpx.AsyncClient(timeout=httpx.Timeout(timeout, write=None))

    async def close(self) -> None:
        """Close the HTTP clients."""
        await self.client.aclose()
        await self.transfer_client.aclose()

    async def health_check(self) -> bool:
        """Check if the API is responding."""
        try:
            response = await self.client.get(f"{self.base_url}/health")
            return response.status_code == 200
        except httpx.RequestError:
            return False

    async def create_primary(self, kind: str, address: dict[str, Any]) -> RemoteIds:
        """Create the property in DRAFT state.

        Raises:
            InvalidIdentifierError: If the response carries no usable property id
        """
        data = await self._request(
            "POST",
            "/properties",
            json={"kind": kind, "address": address, "status": "DRAFT"},
        )
        primary_id = data.get("property_id") or (data.get("property") or {}).get("id")
        if not is_valid_identifier(primary_id):
            raise InvalidIdentifierError(f"Property creation returned no usable id: {primary_id!r}")

        unit_id = data.get("unit_id")
        return RemoteIds(
            primary_id=str(primary_id),
            secondary_id=str(unit_id) if is_valid_identifier(unit_id) else None,
        )

    async def update_primary(self, primary_id: str, attributes: dict[str, Any]) -> None:
        await self._request("PATCH", f"/properties/{primary_id}", json=attributes)

    async def create_sub_item(self, primary_id: str, payload: dict[str, Any]) -> str:
        data = await self._request("POST", f"/properties/{primary_id}/rooms", json=payload)
        room_id = (data.get("room") or {}).get("id") or data.get("id")
        if not is_valid_identifier(room_id):
            raise InvalidIdentifierError(f"Room creation returned no usable id: {room_id!r}")
        return str(room_id)

    async def request_upload_target(
        self, primary_id: str, file_name: str, mime_type: str, tag: str
    ) -> UploadTarget:
        """Ask for a pre-signed write target for one file.

        Raises:
            UnsupportedMediaTypeError: If mime_type is not allowed (no request is sent)
            ResourceAPIError: If the response has no upload URL
        """
        if mime_type not in self.allowed_mime_types:
            raise UnsupportedMediaTypeError(f"{file_name}: unsupported type {mime_type}")

        data = await self._request(
            "POST",
            f"/properties/{primary_id}/photos/upload-url",
            json={"file_name": file_name, "mime_type": mime_type, "tag": tag},
        )
        url = data.get("upload_url") or data.get("uploadURL")
        if not url:
            raise ResourceAPIError(f"Upload URL missing for {file_name}")
        return UploadTarget(url=url, key=data.get("key") or "")

    async def transfer_bytes(self, url: str, content: bytes, mime_type: str) -> None:
        """PUT raw bytes to a write target.

        Raises:
            ResourceAPIError: On transport failure or non-2xx status
        """
        try:
            response = await self.transfer_client.put(
                url, content=content, headers={"Content-Type": mime_type}
            )
        except httpx.RequestError as e:
            raise ResourceAPIError(f"Transfer failed: {e}") from e
        if not response.is_success:
            raise ResourceAPIError(
                f"Transfer rejected with status {response.status_code}",
                status_code=response.status_code,
            )

    async def bulk_write_tags(self, primary_id: str, tags: list[str]) -> None:
        await self._request(
            "POST",
            f"/properties/{primary_id}/features/bulk",
            json=create_features_payload(tags),
        )

    async def delete_primary(self, primary_id: str) -> None:
        await self._request("DELETE", f"/properties/{primary_id}")

    async def _request(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        """Send one API request and decode its JSON body.

        Raises:
            ResourceAPIError: On transport failure or non-2xx status
        """
        try:
            response = await self.client.request(method, f"{self.base_url}{path}", **kwargs)
        except httpx.RequestError as e:
            raise ResourceAPIError(f"{method} {path} failed: {e}") from e

        if not response.is_success:
            raise ResourceAPIError(
                f"{method} {path} returned {response.status_code}: {_error_detail(response)}",
                status_code=response.status_code,
            )

        logger.debug(f"{method} {path} -> {response.status_code}")
        if not response.content:
            return {}
        try:
            data = response.json()
        except ValueError:
            return {}
        return data if isinstance(data, dict) else {}


def _error_detail(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(data, dict):
        return str(data.get("error") or data.get("message") or data)
    return str(data)
