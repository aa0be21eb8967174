"""Local VIP set advertised by a keepalived daemon."""

from __future__ import annotations

import logging
import os
import shlex
import subprocess
import threading
from pathlib import Path

from ..allocation import VirtualIPAllocator
from ..cluster.models import ConfigGroup, Node
from ..config import KeepalivedConfig
from ..exceptions import AllocationError, ClusterAPIError, DaemonConfigError, DaemonReloadError
from .compensation import Compensation

logger = logging.getLogger(__name__)


class KeepalivedController:
    """Holds the VIP set, renders ``keepalived.conf`` from it and reloads the daemon."""

    def __init__(self, config: KeepalivedConfig):
        self._config = config
        self._vips: set[str] = set()
        self._lock = threading.Lock()

    @property
    def vips(self) -> list[str]:
        with self._lock:
            return sorted(self._vips)

    def start(self) -> None:
        with self._lock:
            self.write_config(self.render())
        logger.info("Starting keepalived")
        self._run(self._config.start_command)

    def add_vip(self, vip: str) -> bool:
        """Add ``vip`` and reload. Returns False if it was already held."""
        logger.info("Adding VIP %s", vip, extra={"vip": vip})
        with self._lock:
            if vip in self._vips:
                logger.error("VIP %s has already been added", vip, extra={"vip": vip})
                return False
            self._vips.add(vip)
            try:
                self._apply()
            except DaemonConfigError:
                self._vips.discard(vip)
                raise
            except DaemonReloadError:
                # The written config would advertise the VIP on the next reload
                self._vips.discard(vip)
                self.write_config(self.render())
                raise
        return True

    def delete_vip(self, vip: str) -> bool:
        """Remove ``vip`` and reload. Returns False if it was not held."""
        logger.info("Deleting VIP %s", vip, extra={"vip": vip})
        with self._lock:
            if vip not in self._vips:
                logger.error("VIP %s has not been added", vip, extra={"vip": vip})
                return False
            self._vips.discard(vip)
            self._apply()
        return True

    def delete_all_vips(self) -> None:
        with self._lock:
            if not self._vips:
                return
            logger.info("Releasing %d VIP(s)", len(self._vips))
            self._vips.clear()
            self._apply()

    def render(self) -> str:
        """keepalived.conf for the current VIP set."""
        cfg = self._config
        sections = [
            "global_defs {\n"
            "  vrrp_version 3\n"
            "  vrrp_iptables\n"
            "}\n"
        ]
        if self._vips:
            lines = [
                "vrrp_instance vips {",
                f"  state {cfg.state}",
                f"  interface {cfg.interface}",
                f"  virtual_router_id {cfg.virtual_router_id}",
                f"  priority {cfg.priority}",
                "  nopreempt",
                "  advert_int 1",
                "",
                "  virtual_ipaddress {",
            ]
            lines.extend(f"    {vip}/32 dev {cfg.interface}" for vip in sorted(self._vips))
            lines.append("  }")
            lines.append("}")
            sections.append("\n".join(lines) + "\n")
        return "\n".join(sections)

    def write_config(self, content: str) -> None:
        path = Path(self._config.config_path)
        tmp = path.with_name(path.name + ".tmp")
        try:
            tmp.write_text(content)
            os.replace(tmp, path)
        except OSError as exc:
            raise DaemonConfigError(f"Could not write keepalived config {path}: {exc}") from exc
        logger.debug("Wrote %s", path)

    def reload(self) -> None:
        logger.info("Reloading keepalived")
        self._run(self._config.reload_command)

    def _apply(self) -> None:
        self.write_config(self.render())
        self.reload()

    @staticmethod
    def _run(command: str) -> None:
        logger.debug("Executing: %s", command)
        try:
            result = subprocess.run(shlex.split(command), check=False, text=True, capture_output=True)
        except OSError as exc:
            raise DaemonReloadError(f"Could not run '{command}': {exc}") from exc
        if result.returncode != 0:
            raise DaemonReloadError(
                f"'{command}' exited with {result.returncode}: {result.stderr.strip()}"
            )


class KeepalivedBackend:
    """Backend advertising one VIP per group; node membership is not tracked."""

    def __init__(self, keepalived: KeepalivedController, allocator: VirtualIPAllocator):
        self._keepalived = keepalived
        self._allocator = allocator
        self._group_vips: dict[str, str] = {}
        self._lock = threading.Lock()

    def start(self) -> None:
        self._keepalived.start()

    def shutdown(self) -> None:
        self._keepalived.delete_all_vips()

    def provision(self, group: ConfigGroup) -> None:
        group.validate()
        with Compensation(group.name) as comp:
            if group.bind_ip:
                vip = group.bind_ip
            else:
                vip = self._allocator.lookup(group.name)
                if vip is None:
                    vip = self._allocator.allocate(group.name)
                    comp.record(f"virtual IP {vip}", lambda: self._allocator.release(group.name))

            with self._lock:
                previous = self._group_vips.get(group.name)
            if previous == vip:
                logger.debug("Group %s already holds VIP %s", group.name, vip, extra={"group": group.name})
                return

            if self._keepalived.add_vip(vip):
                comp.record(f"VIP {vip}", lambda: self._keepalived.delete_vip(vip))
            if previous is not None:
                self._keepalived.delete_vip(previous)

        with self._lock:
            self._group_vips[group.name] = vip
        logger.info("Group %s advertised on %s", group.name, vip, extra={"group": group.name, "vip": vip})

    def deprovision(self, group_name: str) -> None:
        with self._lock:
            vip = self._group_vips.pop(group_name, None)
        if vip is not None:
            try:
                self._keepalived.delete_vip(vip)
            except DaemonReloadError as exc:
                logger.error("Reload after removing VIP %s failed: %s", vip, exc, extra={"group": group_name})
        try:
            self._allocator.release(group_name)
        except (AllocationError, ClusterAPIError) as exc:
            logger.error("Error deleting virtual IP of group %s: %s", group_name, exc, extra={"group": group_name})

    def on_node_added(self, node: Node) -> None:
        pass

    def on_node_removed(self, node: Node) -> None:
        pass

    def on_node_updated(self, old: Node, new: Node) -> None:
        pass
