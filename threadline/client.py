import logging
from contextlib import asynccontextmanager
from typing import (
    Any,
    AsyncContextManager,
    AsyncIterator,
    Dict,
    List,
    Optional,
    Protocol,
    Sequence,
)

import httpx

from .config import ChatConfig
from .models import ChatMessage, Thread
from .serializers import ThreadlineSerializer

logger = logging.getLogger(__name__)


class ApiError(Exception):
    """A remote call failed at the transport level or with a non-2xx status."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class PersistenceAdapter(Protocol):
    """Remote thread store."""

    async def list_threads(self) -> List[Thread]: ...

    async def get_messages(self, thread_id: str) -> List[ChatMessage]: ...

    async def delete_thread(self, thread_id: str) -> None: ...

    async def save_messages(
        self, thread_id: str, messages: Sequence[ChatMessage]
    ) -> None: ...


class ChatTransport(Protocol):
    """Remote agent endpoint that streams replies."""

    def stream_chat(
        self, messages: Sequence[ChatMessage], thread_id: str
    ) -> AsyncContextManager[AsyncIterator[str]]: ...


class ApiClient:
    """HTTP client for the thread and chat endpoints."""

    def __init__(
        self,
        base_url: str,
        resource_id: Optional[str] = None,
        *,
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.resource_id = resource_id
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=timeout,
            headers={"Content-Type": "application/json"},
        )

    @classmethod
    def from_config(cls, config: ChatConfig) -> "ApiClient":
        return cls(
            config.base_url,
            config.resource_id,
            timeout=config.request_timeout,
        )

    async def aclose(self):
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "ApiClient":
        return self

    async def __aexit__(self, *exc_info):
        await self.aclose()

    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            return await self._client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            raise ApiError(f"{method} {url} failed: {e}") from e

    @staticmethod
    def _raise_for_status(response: httpx.Response):
        if response.is_success:
            return
        raise ApiError(
            f"{response.request.method} {response.request.url.path} "
            f"returned {response.status_code}",
            status_code=response.status_code,
        )

    @staticmethod
    def _json(response: httpx.Response) -> Dict[str, Any]:
        try:
            payload = response.json()
        except ValueError as e:
            raise ApiError(
                f"Invalid JSON from {response.request.url.path}: {e}",
                status_code=response.status_code,
            ) from e
        if not isinstance(payload, dict):
            raise ApiError(
                f"Unexpected payload from {response.request.url.path}",
                status_code=response.status_code,
            )
        return payload

    # --- Threads ---

    async def list_threads(self) -> List[Thread]:
        response = await self._request("GET", "/threads")
        self._raise_for_status(response)
        return ThreadlineSerializer.parse_threads(self._json(response))

    async def get_messages(self, thread_id: str) -> List[ChatMessage]:
        """Fetch a thread's history; an unknown thread has an empty history."""
        response = await self._request("GET", f"/threads/{thread_id}")
        if response.status_code == 404:
            logger.debug(f"Thread {thread_id} not found remotely, treating as empty")
            return []
        self._raise_for_status(response)
        return ThreadlineSerializer.parse_messages(self._json(response))

    async def delete_thread(self, thread_id: str) -> None:
        response = await self._request("DELETE", f"/threads/{thread_id}")
        self._raise_for_status(response)

    async def save_messages(self, thread_id: str, messages: Sequence[ChatMessage]) -> None:
        response = await self._request(
            "PUT",
            f"/threads/{thread_id}",
            json={
                "messages": ThreadlineSerializer.serialize_messages(messages),
                "resourceId": self.resource_id,
            },
        )
        self._raise_for_status(response)

    # --- Chat ---

    @asynccontextmanager
    async def stream_chat(
        self, messages: Sequence[ChatMessage], thread_id: str
    ) -> AsyncIterator[AsyncIterator[str]]:
        """Open the streamed reply for ``messages``.

        Yields the body's text chunks once a 2xx response has started.

        Raises:
            ApiError: On a transport error or a non-2xx status.
        """
        body = ThreadlineSerializer.chat_request(messages, thread_id, self.resource_id)
        try:
            async with self._client.stream("POST", "/chat", json=body) as response:
                if not response.is_success:
                    await response.aread()
                    self._raise_for_status(response)
                yield response.aiter_text()
        except httpx.HTTPError as e:
            raise ApiError(f"POST /chat failed: {e}") from e
