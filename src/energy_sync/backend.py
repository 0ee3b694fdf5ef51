"""Remote backend: named procedure invocation."""

from __future__ import annotations

import copy
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

import httpx

Handler = Callable[[dict[str, Any]], Awaitable[Any] | Any]


class RemoteCallError(Exception):
    """Low-level failure reported by a :class:`RemoteBackend`."""

    def __init__(
        self,
        code: str | None,
        message: str,
        *,
        status: int | None = None,
        connection_lost: bool = False,
        details: str | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.status = status
        self.connection_lost = connection_lost
        self.details = details


class RemoteBackend(ABC):
    """Abstract RPC backend."""

    @abstractmethod
    async def invoke(self, name: str, args: dict[str, Any], *, credential: str) -> Any:
        """Invoke ``name`` with ``args`` on behalf of ``credential``.

        Raises:
            RemoteCallError: the call failed.
        """
        ...


@dataclass
class InvokeRecord:
    name: str
    args: dict[str, Any]
    credential: str


@dataclass
class InMemoryRemoteBackend(RemoteBackend):
    """In-memory backend for testing. Handlers receive a copy of the args."""

    handlers: dict[str, Handler] = field(default_factory=dict)
    calls: list[InvokeRecord] = field(default_factory=list)

    def register(self, name: str, handler: Handler) -> None:
        self.handlers[name] = handler

    def calls_to(self, name: str) -> list[InvokeRecord]:
        return [c for c in self.calls if c.name == name]

    async def invoke(self, name: str, args: dict[str, Any], *, credential: str) -> Any:
        self.calls.append(InvokeRecord(name=name, args=copy.deepcopy(args), credential=credential))
        handler = self.handlers.get(name)
        if handler is None:
            raise RemoteCallError(
                "PGRST202",
                f"Could not find the function public.{name} in the schema cache",
                status=404,
            )
        result = handler(copy.deepcopy(args))
        if isinstance(result, Awaitable):
            result = await result
        return result


class HttpRemoteBackend(RemoteBackend):
    """PostgREST RPC backend built on httpx."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        *,
        timeout_seconds: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._client = client or httpx.AsyncClient(timeout=timeout_seconds)
        self._owns_client = client is None

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def invoke(self, name: str, args: dict[str, Any], *, credential: str) -> Any:
        try:
            resp = await self._client.post(
                f"{self._base_url}/rest/v1/rpc/{name}",
                json=args,
                headers={
                    "apikey": self._api_key,
                    "Authorization": f"Bearer {credential}",
                    "Content-Type": "application/json",
                },
            )
        except httpx.TimeoutException as e:
            raise RemoteCallError(None, f"request timeout: {e}", connection_lost=True) from e
        except httpx.HTTPError as e:
            raise RemoteCallError(None, f"network error: {e}", connection_lost=True) from e

        if resp.status_code >= 400:
            raise _error_from_response(resp)
        if resp.status_code == 204 or not resp.content:
            return None
        try:
            return resp.json()
        except ValueError as e:
            raise RemoteCallError(None, f"invalid JSON response: {e}", status=resp.status_code) from e


def _error_from_response(resp: httpx.Response) -> RemoteCallError:
    code: str | None = None
    message = f"HTTP {resp.status_code}"
    details: str | None = None
    try:
        body = resp.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        code = body.get("code") or None
        message = str(body.get("message") or body.get("msg") or message)
        details = body.get("details") or body.get("hint")
    return RemoteCallError(code, message, status=resp.status_code, details=details)
