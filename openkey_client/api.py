"""
HTTP client for the remote chat service.

Thin async wrapper over httpx; every call authenticates with the bearer
token held by the session and raises a typed ApiError subclass on failure.
"""

import logging
from typing import List, Optional, Type

import httpx
from pydantic import ValidationError

from .models import (
    AttachmentKind,
    AuthResult,
    MessagePayload,
    SendMessageRequest,
    SendResult,
    UploadResult,
    UserPayload,
)
from .session import SessionContext

logger = logging.getLogger(__name__)


class ApiError(Exception):
    """Base exception for remote service errors"""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class FetchFailure(ApiError):
    """Reading remote state failed"""


class SendFailure(ApiError):
    """Dispatching a message failed"""


class UploadFailure(ApiError):
    """Uploading an attachment failed"""


class AuthFailure(ApiError):
    """Credentials or token were rejected"""


class ApiClient:
    """
    Client for the remote service contract.
    """

    def __init__(self, base_url: str, session: SessionContext,
                 http_client: Optional[httpx.AsyncClient] = None,
                 timeout: float = 10.0):
        """
        Initialize API client.

        Args:
            base_url: Base URL of the chat service
            session: Session holding the auth token
            http_client: Preconfigured httpx client (tests inject a transport)
            timeout: Request timeout in seconds
        """
        self.base_url = base_url.rstrip("/")
        self.session = session
        self.http_client = http_client or httpx.AsyncClient(timeout=timeout)

    def _headers(self, url: str) -> dict:
        """Bearer header, only for requests to the chat service itself"""
        if not self.session.token or not self._same_origin(url):
            return {}
        return {"Authorization": f"Bearer {self.session.token}"}

    def _same_origin(self, url: str) -> bool:
        target = httpx.URL(url)
        base = httpx.URL(self.base_url)
        return (target.scheme, target.host, target.port) == (base.scheme, base.host, base.port)

    async def _request(self, method: str, path: str, error: Type[ApiError],
                       **kwargs) -> httpx.Response:
        url = path if path.startswith("http") else f"{self.base_url}{path}"
        try:
            response = await self.http_client.request(
                method, url, headers=self._headers(url), **kwargs
            )
        except httpx.HTTPError as e:
            raise error(f"{method} {path} failed: {e}") from e

        if response.status_code in (401, 403):
            raise AuthFailure(f"{method} {path} unauthorized", response.status_code)
        if response.is_error:
            raise error(f"{method} {path} returned {response.status_code}", response.status_code)
        return response

    @staticmethod
    def _detail(response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return response.text
        if isinstance(body, dict):
            return body.get("detail") or body.get("error") or response.text
        return response.text

    async def _authenticate(self, path: str, username: str, password: str) -> AuthResult:
        try:
            response = await self.http_client.post(
                f"{self.base_url}{path}",
                json={"username": username, "password": password}
            )
        except httpx.HTTPError as e:
            raise AuthFailure(f"POST {path} failed: {e}") from e

        if response.is_error:
            raise AuthFailure(self._detail(response), response.status_code)
        return AuthResult.model_validate(response.json())

    async def register(self, username: str, password: str) -> AuthResult:
        return await self._authenticate("/register", username, password)

    async def login(self, username: str, password: str) -> AuthResult:
        return await self._authenticate("/login", username, password)

    async def get_me(self) -> UserPayload:
        response = await self._request("GET", "/me", FetchFailure)
        return UserPayload.model_validate(response.json()["user"])

    async def get_users(self) -> List[UserPayload]:
        """
        Fetch every counterpart visible to the current user.

        Raises:
            FetchFailure: If the request or its payload is invalid
        """
        response = await self._request("GET", "/users", FetchFailure)
        try:
            return [UserPayload.model_validate(item) for item in response.json()]
        except (ValueError, ValidationError) as e:
            raise FetchFailure(f"Invalid user list: {e}") from e

    async def get_messages(self, partner_id: str) -> List[MessagePayload]:
        """
        Fetch the full ordered history with a counterpart.

        Raises:
            FetchFailure: If the request or its payload is invalid
        """
        response = await self._request("GET", f"/messages/{partner_id}", FetchFailure)
        try:
            items = response.json()
        except ValueError as e:
            raise FetchFailure(f"Invalid message list for {partner_id}: {e}") from e
        if not isinstance(items, list):
            raise FetchFailure(f"Invalid message list for {partner_id}")

        messages = []
        for item in items:
            try:
                messages.append(MessagePayload.model_validate(item))
            except ValidationError as e:
                # One unreadable message must not hide the rest of the history
                logger.warning("Skipping invalid message from %s: %s", partner_id, e)
        return messages

    async def send_message(self, receiver_id: str, text: str,
                           attachment_url: Optional[str] = None,
                           attachment_type: Optional[AttachmentKind] = None,
                           is_secret: bool = False) -> SendResult:
        """
        Persist a message on the service.

        Args:
            receiver_id: Counterpart user id
            text: Plaintext or sealed payload
            attachment_url: Uploaded attachment reference
            attachment_type: Attachment kind
            is_secret: Whether text/attachment are encrypted

        Returns:
            SendResult with the server-assigned id

        Raises:
            SendFailure: If the service did not accept the message
        """
        body = SendMessageRequest(
            receiver_id=receiver_id,
            text=text,
            attachment_url=attachment_url,
            attachment_type=attachment_type,
            is_secret=is_secret,
        )
        response = await self._request(
            "POST", "/messages", SendFailure,
            json=body.model_dump(mode="json", by_alias=True)
        )
        try:
            result = SendResult.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            raise SendFailure(f"Invalid send response: {e}") from e
        if not result.success:
            raise SendFailure("Service rejected the message")
        return result

    async def mark_read(self, partner_id: str):
        await self._request("POST", f"/messages/{partner_id}/read", SendFailure)

    async def upload(self, filename: str, data: bytes, media_type: str) -> UploadResult:
        """
        Upload a file as multipart form data.

        Raises:
            UploadFailure: If the upload did not succeed
        """
        response = await self._request(
            "POST", "/upload", UploadFailure,
            files={"file": (filename, data, media_type)}
        )
        try:
            return UploadResult.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            raise UploadFailure(f"Invalid upload response: {e}") from e

    async def download(self, url: str) -> bytes:
        """Fetch attachment bytes from an uploaded file reference"""
        path = url if url.startswith("http") else "/" + url.lstrip("/")
        response = await self._request("GET", path, FetchFailure)
        return response.content

    async def aclose(self):
        await self.http_client.aclose()
