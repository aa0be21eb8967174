"""REST client for the F5 BIG-IP iControl REST API (LTM objects)."""

from __future__ import annotations

import logging
from typing import Any

import requests

from ..config import F5Config
from ..exceptions import BackendAPIError, ResourceConflict, ResourceNotFound

logger = logging.getLogger(__name__)

MONITOR_PROTOCOL = "tcp"


class IControlClient:
    """Thin wrapper around ``/mgmt/tm/ltm`` for monitors, pools, nodes and virtual servers."""

    def __init__(self, config: F5Config):
        self._base = f"{config.base_url.rstrip('/')}/mgmt/tm/ltm"
        self._partition = config.partition
        self._session = requests.Session()
        self._session.auth = (config.username, config.password)
        self._session.headers["Content-Type"] = "application/json"
        self._session.verify = config.verify_ssl
        self._timeout = config.timeout

    @property
    def partition(self) -> str:
        return self._partition

    def full_path(self, name: str) -> str:
        """``/Common/name`` as used in object references."""
        return f"/{self._partition}/{name}"

    def _ref(self, name: str) -> str:
        """``~Common~name`` as used in URLs."""
        return f"~{self._partition}~{name}"

    def close(self) -> None:
        self._session.close()

    # ── Monitors ────────────────────────────────────────────────────

    def get_monitor(self, name: str) -> dict[str, Any] | None:
        return self._get_or_none(f"/monitor/{MONITOR_PROTOCOL}/{self._ref(name)}")

    def list_monitors(self) -> list[dict[str, Any]]:
        return self._items(f"/monitor/{MONITOR_PROTOCOL}")

    def create_monitor(self, name: str, interval: int, timeout: int) -> dict[str, Any]:
        data = {
            "name": name,
            "partition": self._partition,
            "interval": interval,
            "timeout": timeout,
        }
        return self._post(f"/monitor/{MONITOR_PROTOCOL}", json=data).json()

    def delete_monitor(self, name: str) -> None:
        self._delete(f"/monitor/{MONITOR_PROTOCOL}/{self._ref(name)}")

    # ── Pools ───────────────────────────────────────────────────────

    def get_pool(self, name: str) -> dict[str, Any] | None:
        return self._get_or_none(f"/pool/{self._ref(name)}")

    def list_pools(self) -> list[dict[str, Any]]:
        return self._items("/pool")

    def create_pool(self, name: str, monitor: str) -> dict[str, Any]:
        data = {
            "name": name,
            "partition": self._partition,
            "monitor": self.full_path(monitor),
            "allowNat": "yes",
            "allowSnat": "yes",
        }
        return self._post("/pool", json=data).json()

    def delete_pool(self, name: str) -> None:
        self._delete(f"/pool/{self._ref(name)}")

    # ── Pool members ────────────────────────────────────────────────

    def list_pool_members(self, pool: str) -> list[dict[str, Any]]:
        return self._items(f"/pool/{self._ref(pool)}/members")

    def add_pool_member(self, pool: str, member: str) -> dict[str, Any]:
        data = {"name": member, "partition": self._partition}
        return self._post(f"/pool/{self._ref(pool)}/members", json=data).json()

    def delete_pool_member(self, pool: str, member: str) -> None:
        self._delete(f"/pool/{self._ref(pool)}/members/{self._ref(member)}")

    # ── Nodes ───────────────────────────────────────────────────────

    def get_node(self, name: str) -> dict[str, Any] | None:
        return self._get_or_none(f"/node/{self._ref(name)}")

    def create_node(self, name: str, address: str) -> dict[str, Any]:
        data = {"name": name, "partition": self._partition, "address": address}
        return self._post("/node", json=data).json()

    def modify_node(self, name: str, address: str) -> dict[str, Any]:
        return self._patch(f"/node/{self._ref(name)}", json={"address": address}).json()

    def delete_node(self, name: str) -> None:
        self._delete(f"/node/{self._ref(name)}")

    # ── Virtual servers ─────────────────────────────────────────────

    def get_virtual_server(self, name: str) -> dict[str, Any] | None:
        return self._get_or_none(f"/virtual/{self._ref(name)}")

    def list_virtual_servers(self) -> list[dict[str, Any]]:
        return self._items("/virtual")

    def create_virtual_server(self, name: str, pool: str, destination: str) -> dict[str, Any]:
        data = {
            "name": name,
            "partition": self._partition,
            "destination": self.full_path(destination),
            "mask": "255.255.255.255",
            "pool": self.full_path(pool),
            "sourceAddressTranslation": {"type": "automap"},
        }
        return self._post("/virtual", json=data).json()

    def modify_virtual_server_destination(self, name: str, destination: str) -> dict[str, Any]:
        data = {"destination": self.full_path(destination)}
        return self._patch(f"/virtual/{self._ref(name)}", json=data).json()

    def delete_virtual_server(self, name: str) -> None:
        self._delete(f"/virtual/{self._ref(name)}")

    # ── Internal HTTP helpers ───────────────────────────────────────

    def _get_or_none(self, path: str) -> dict[str, Any] | None:
        try:
            return self._get(path).json()
        except ResourceNotFound:
            return None

    def _items(self, path: str) -> list[dict[str, Any]]:
        return self._get(path).json().get("items", [])

    def _get(self, path: str) -> requests.Response:
        return self._request("GET", path)

    def _post(self, path: str, json: Any = None) -> requests.Response:
        return self._request("POST", path, json=json)

    def _patch(self, path: str, json: Any = None) -> requests.Response:
        return self._request("PATCH", path, json=json)

    def _delete(self, path: str) -> requests.Response:
        return self._request("DELETE", path)

    def _request(self, method: str, path: str, **kwargs) -> requests.Response:
        url = f"{self._base}{path}"
        kwargs.setdefault("timeout", self._timeout)
        logger.debug("%s %s", method, path)

        try:
            resp = self._session.request(method, url, **kwargs)
        except requests.RequestException as exc:
            raise BackendAPIError(f"Request failed: {exc}") from exc

        if resp.status_code == 404:
            raise ResourceNotFound(f"HTTP 404 on {method} {path}", response_body=resp.text)

        if resp.status_code == 409:
            raise ResourceConflict(f"HTTP 409 on {method} {path}", response_body=resp.text)

        if resp.status_code >= 400:
            raise BackendAPIError(
                f"HTTP {resp.status_code} on {method} {path}: {resp.text}",
                status_code=resp.status_code,
                response_body=resp.text,
            )

        return resp
