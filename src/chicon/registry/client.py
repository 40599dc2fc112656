"""HTTP registry client.

Reads function and repository documents from the catalog service. The
engine never writes to the catalog.

Endpoints (relative to ``registry_url``)::

    GET /functions/{id}       → function document
    GET /functions            → list of function documents
    GET /repositories/{id}    → repository document

Ids are percent-encoded into a single path segment.
Requests carry ``Authorization: Bearer <token>`` when a token is set.
A 404 is a definition error (``FunctionNotFound`` / ``RepositoryNotFound``);
transport failures, 5xx responses and unparseable bodies raise the
retryable ``RegistryUnavailable``.
"""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable
from urllib.parse import quote

import httpx

from chicon.core.errors import (
    CapabilityRejected,
    DefinitionError,
    FunctionNotFound,
    RegistryUnavailable,
    RepositoryNotFound,
)
from chicon.core.logging import get_logger
from chicon.models import Function, Repository

logger = get_logger(__name__)


@runtime_checkable
class RegistryClient(Protocol):
    """Read-only access to function and repository definitions."""

    async def get_function(self, function_id: str) -> Function: ...

    async def get_repository(self, repository_id: str) -> Repository: ...

    async def list_functions(self) -> list[Function]: ...


class HttpRegistryClient:
    """Registry client over the catalog's REST API.

    Example:
        >>> async with HttpRegistryClient("http://scheduler/api/v1", token="s3cret") as registry:
        ...     function = await registry.get_function("757ad52c-...")
    """

    def __init__(
        self,
        base_url: str,
        *,
        token: str = "",
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        headers = {"Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self.base_url = base_url.rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    @classmethod
    def from_settings(cls, settings: Any) -> HttpRegistryClient:
        return cls(
            settings.registry_url,
            token=settings.registry_token,
            timeout=settings.registry_timeout_seconds,
        )

    async def __aenter__(self) -> HttpRegistryClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _get_json(self, path: str, not_found: type[DefinitionError] | None = None) -> Any:
        try:
            response = await self._client.get(path)
        except httpx.HTTPError as exc:
            raise RegistryUnavailable(
                f"Registry request failed: {exc}",
                context={"path": path},
                cause=exc,
            ) from exc

        if response.status_code == 404 and not_found is not None:
            raise not_found(f"Not found in registry: {path}", context={"path": path})
        if response.is_error:
            raise RegistryUnavailable(
                f"Registry returned HTTP {response.status_code}",
                retryable=response.status_code >= 500 or response.status_code == 429,
                context={"path": path, "status": response.status_code},
            )
        try:
            return response.json()
        except ValueError as exc:
            raise RegistryUnavailable("Registry returned a non-JSON body", context={"path": path}, cause=exc) from exc

    async def get_function(self, function_id: str) -> Function:
        data = await self._get_json(f"/functions/{quote(function_id, safe='')}", FunctionNotFound)
        return _parse(Function, data, FunctionNotFound, function_id)

    async def get_repository(self, repository_id: str) -> Repository:
        data = await self._get_json(f"/repositories/{quote(repository_id, safe='')}", RepositoryNotFound)
        return _parse(Repository, data, RepositoryNotFound, repository_id)

    async def list_functions(self) -> list[Function]:
        data = await self._get_json("/functions")
        if not isinstance(data, list):
            raise RegistryUnavailable("Registry returned a non-list body for /functions")
        functions: list[Function] = []
        for document in data:
            try:
                functions.append(Function.from_dict(document))
            except (CapabilityRejected, ValueError, TypeError, AttributeError) as exc:
                logger.warning("registry.function_skipped", error=str(exc))
        return functions


def _parse(model: Any, data: Any, not_found: type[DefinitionError], ident: str) -> Any:
    if not isinstance(data, dict):
        raise RegistryUnavailable(f"Registry returned a malformed document for {ident}")
    try:
        return model.from_dict(data)
    except CapabilityRejected:
        raise
    except (ValueError, TypeError, AttributeError) as exc:
        raise not_found(f"Malformed registry document for {ident}: {exc}", context={"id": ident}) from exc
