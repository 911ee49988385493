"""HTTP client utilities using httpx.

Every request to the knowledge-base service carries the bearer token
from the :class:`~kbchat.storage.TokenStore`.  Responses are checked in
one place: a 401 invalidates the token and raises
:class:`AuthenticationError`, any other non-2xx status or network failure
raises :class:`TransportError`.
"""

from __future__ import annotations

import inspect
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, Dict

import httpx
from loguru import logger

from ..config.chat_config import ChatConfig
from ..storage.token_store import TokenStore
from .error_handler import AuthenticationError, TransportError

UnauthorizedHook = Callable[[], Awaitable[None] | None]


class ApiClient:
    """Authenticated JSON/multipart client for the remote service."""

    def __init__(
        self,
        config: ChatConfig,
        token_store: TokenStore,
        *,
        client: httpx.AsyncClient | None = None,
        on_unauthorized: UnauthorizedHook | None = None,
    ) -> None:
        self.config = config
        self.token_store = token_store
        self.on_unauthorized = on_unauthorized
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=config.api_base_url,
            timeout=config.api_timeout,
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def has_token(self) -> bool:
        return await self.token_store.get() is not None

    async def request(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,
        data: Dict[str, str] | None = None,
        files: Dict[str, Any] | None = None,
        headers: Dict[str, str] | None = None,
    ) -> Any:
        """Perform a request and return the decoded JSON or text body."""
        request_headers = {**await self._auth_headers(), **(headers or {})}
        logger.debug("API request: {} {}", method, path)
        try:
            response = await self._client.request(
                method,
                path,
                json=json,
                data=data,
                files=files,
                headers=request_headers,
            )
        except httpx.HTTPError as exc:
            raise TransportError(f"Request failed: {exc}") from exc
        await self._raise_for_status(response)
        return self._decode(response)

    @asynccontextmanager
    async def stream(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,
        data: Dict[str, str] | None = None,
        files: Dict[str, Any] | None = None,
    ) -> AsyncIterator[httpx.Response]:
        """Open a streaming request; the body is read by the caller.

        Network errors raised while the caller reads the body surface as
        :class:`TransportError` as well.
        """
        request_headers = await self._auth_headers()
        logger.debug("API stream request: {} {}", method, path)
        try:
            async with self._client.stream(
                method,
                path,
                json=json,
                data=data,
                files=files,
                headers=request_headers,
            ) as response:
                await self._raise_for_status(response)
                yield response
        except httpx.HTTPError as exc:
            raise TransportError(f"Stream request failed: {exc}") from exc

    # ------------------------------------------------------------------
    # Helpers

    async def _auth_headers(self) -> Dict[str, str]:
        token = await self.token_store.get()
        if not token:
            raise AuthenticationError("Not logged in; please log in again")
        return {"Authorization": f"Bearer {token}"}

    async def _raise_for_status(self, response: httpx.Response) -> None:
        if response.is_success:
            return

        await response.aread()
        if response.status_code == 401:
            logger.error("Unauthorised request, invalidating token")
            await self.token_store.clear()
            if self.on_unauthorized is not None:
                result = self.on_unauthorized()
                if inspect.isawaitable(result):
                    await result
            raise AuthenticationError("Login expired; please log in again")

        message = self._error_message(response)
        logger.warning("Request failed: {} {}", response.status_code, message)
        raise TransportError(
            f"Request failed: {response.status_code} {message}".strip(),
            status_code=response.status_code,
        )

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        text = response.text or ""
        try:
            payload = response.json()
        except ValueError:
            return text[:200]
        if isinstance(payload, dict):
            detail = payload.get("message") or payload.get("detail")
            if detail:
                return str(detail)
        return text[:200]

    @staticmethod
    def _decode(response: httpx.Response) -> Any:
        content_type = response.headers.get("content-type", "")
        if "application/json" in content_type:
            try:
                return response.json()
            except ValueError:
                logger.warning("Response declared JSON but could not be parsed")
        return response.text
