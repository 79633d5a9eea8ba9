from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from typing import Any, Optional
from urllib.parse import quote

import aiohttp

LOGGER = logging.getLogger("vmload.control")

DEFAULT_BASE_URL = "http://127.0.0.1:6120/v1"
STATUS_OK = 200


class VMControlError(Exception):
    """Raised when the control API rejects a request or cannot be reached."""

    def __init__(self, message: str, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status


@dataclass(frozen=True)
class ServiceAccount:
    name: str
    token: str


def websocket_base_url(base_url: str) -> str:
    return re.sub(r"^http", "ws", base_url)


def auth_headers(account: Optional[ServiceAccount]) -> dict[str, str]:
    if account is None or not account.name or not account.token:
        return {}
    return {"Authorization": aiohttp.BasicAuth(account.name, account.token).encode()}


class VMControlClient:
    """Thin client for the VM endpoints of the orchestration API."""

    def __init__(
        self,
        session: aiohttp.ClientSession,
        base_url: str = DEFAULT_BASE_URL,
        ws_base_url: Optional[str] = None,
        service_account: Optional[ServiceAccount] = None,
    ) -> None:
        self._session = session
        self._base_url = base_url.rstrip("/")
        self._ws_base_url = (ws_base_url or websocket_base_url(self._base_url)).rstrip("/")
        self._headers = auth_headers(service_account)

    @property
    def session(self) -> aiohttp.ClientSession:
        return self._session

    @property
    def headers(self) -> dict[str, str]:
        return dict(self._headers)

    def port_forward_url(self, name: str, port: int, wait_seconds: int) -> str:
        return (
            f"{self._ws_base_url}/vms/{quote(name, safe='')}/port-forward"
            f"?port={port}&wait={wait_seconds}"
        )

    async def create_vm(
        self,
        name: str,
        image: str,
        startup_script: str,
        headless: bool = True,
    ) -> int:
        body = {
            "name": name,
            "image": image,
            "headless": headless,
            "startup_script": {"script_content": startup_script},
        }
        return await self._request("POST", f"{self._base_url}/vms", json=body)

    async def delete_vm(self, name: str) -> int:
        return await self._request(
            "DELETE", f"{self._base_url}/vms/{quote(name, safe='')}"
        )

    async def _request(self, method: str, url: str, **kwargs: Any) -> int:
        headers = {"Content-Type": "application/json", **self._headers}
        try:
            async with self._session.request(method, url, headers=headers, **kwargs) as resp:
                if resp.status != STATUS_OK:
                    body = await resp.text()
                    raise VMControlError(
                        f"{method} {url} returned HTTP {resp.status}: {body.strip()[:200]}",
                        status=resp.status,
                    )
                await resp.read()
                return resp.status
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise VMControlError(f"{method} {url} failed: {exc!r}") from exc


__all__ = [
    "DEFAULT_BASE_URL",
    "ServiceAccount",
    "VMControlClient",
    "VMControlError",
    "auth_headers",
    "websocket_base_url",
]
