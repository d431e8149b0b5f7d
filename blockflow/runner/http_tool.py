"""HTTP-backed tools.

An HTTP tool is a URL template plus a method. Arguments that fill ``{name}``
placeholders in the URL are consumed by the template; the rest are sent as
query parameters (GET/DELETE) or as a JSON body (everything else).
"""

import re
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

import httpx

_PLACEHOLDER = re.compile(r"\{(\w+)\}")
_QUERY_METHODS = frozenset({"GET", "DELETE", "HEAD"})


class HttpToolError(Exception):
    """The remote endpoint answered with an error status."""

    def __init__(self, status_code: int, body: str):
        super().__init__(f"HTTP {status_code}: {body[:200]}")
        self.status_code = status_code
        self.body = body


@dataclass
class HttpToolSpec:
    """Where and how an HTTP tool sends its request."""

    url: str
    method: str = "GET"
    headers: dict[str, str] = field(default_factory=dict)
    timeout: float = 30.0


def render_url(template: str, inputs: dict[str, Any]) -> tuple[str, dict[str, Any]]:
    """Fill URL placeholders from inputs. Returns (url, unused inputs)."""
    used: set[str] = set()

    def _sub(match: re.Match) -> str:
        key = match.group(1)
        if key not in inputs:
            return match.group(0)
        used.add(key)
        return str(inputs[key])

    url = _PLACEHOLDER.sub(_sub, template)
    return url, {k: v for k, v in inputs.items() if k not in used}


class HttpToolExecutor:
    """Async callable suitable as a ToolRegistry executor."""

    def __init__(
        self,
        spec: HttpToolSpec,
        client_factory: Callable[[], httpx.AsyncClient] | None = None,
    ):
        self.spec = spec
        self._client_factory = client_factory or (
            lambda: httpx.AsyncClient(timeout=self.spec.timeout)
        )

    async def __call__(self, inputs: dict[str, Any]) -> dict[str, Any]:
        method = self.spec.method.upper()
        url, remaining = render_url(self.spec.url, inputs)

        request_kwargs: dict[str, Any] = {"headers": self.spec.headers}
        if method in _QUERY_METHODS:
            request_kwargs["params"] = remaining
        else:
            request_kwargs["json"] = remaining

        async with self._client_factory() as client:
            response = await client.request(method, url, **request_kwargs)

        if response.status_code >= 400:
            raise HttpToolError(response.status_code, response.text)

        try:
            data = response.json()
        except ValueError:
            data = response.text

        return {
            "status": response.status_code,
            "data": data,
            "headers": dict(response.headers),
        }
