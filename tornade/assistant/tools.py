"""Server-control tool exposed to the dialogue model.

Failures here are reported back inside the result dict instead of raised, so
the model can still explain them to the user.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import quote

import httpx

LOGGER = logging.getLogger("tornade-assistant.tools")

SUPPORTED_COMMANDS = frozenset({"list", "start", "stop"})


@dataclass(slots=True)
class ToolDispatcher:
    base_url: str
    timeout: float | None = None
    client: httpx.AsyncClient | None = None
    logger: logging.Logger = field(default=LOGGER, repr=False)
    _owns_client: bool = field(init=False, default=False, repr=False)

    def __post_init__(self) -> None:
        self.base_url = self.base_url.rstrip("/")
        if self.client is None:
            self.client = httpx.AsyncClient(
                timeout=self.timeout,
                headers={"Content-Type": "application/json"},
            )
            self._owns_client = True

    async def aclose(self) -> None:
        if self._owns_client and self.client is not None:
            await self.client.aclose()
            self._owns_client = False

    async def dispatch(self, command: str | None, args: dict[str, Any] | None = None) -> dict[str, Any]:
        args = args or {}
        if not isinstance(command, str) or command not in SUPPORTED_COMMANDS:
            self.logger.info("[tools] Ignoring unknown server command: %s", command)
            return {"error": "unknown command"}
        if command == "list":
            return await self._request("GET", "/servers")
        server_name = args.get("server_name")
        if not isinstance(server_name, str) or not server_name.strip():
            return {"error": "server_name is required"}
        path = f"/servers/{quote(server_name.strip(), safe='')}/{command}"
        return await self._request("POST", path, json={})

    async def _request(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            response = await self.client.request(method, url, **kwargs)
        except httpx.HTTPError as exc:
            self.logger.warning("[tools] Control API call to %s failed: %s", path, exc)
            return {"error": str(exc) or exc.__class__.__name__}
        if not response.is_success:
            detail = _error_detail(response)
            self.logger.warning("[tools] Control API call to %s failed: %s", path, detail)
            return {"error": f"Control API error: {detail}"}
        try:
            payload = response.json()
        except ValueError:
            return {"result": response.text}
        if isinstance(payload, dict):
            return payload
        return {"result": payload}


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict) and body.get("detail"):
        return str(body["detail"])
    return response.reason_phrase or f"HTTP {response.status_code}"
