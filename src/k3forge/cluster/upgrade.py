# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/k3forge/cluster/upgrade.py

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from typing import Dict, List, Optional

from k3forge.cloud.models import Server
from k3forge.cloud.provisioner import ResourceProvisioner
from k3forge.config.models import ClusterSpec
from k3forge.errors import ConfirmationDeclined, K3ForgeError, SSHCommandError
from k3forge.observers.events import UpgradePlanApplied, UpgradeProgress
from k3forge.utils.ssh import RemoteExecutor, heredoc_delimiter
from k3forge.utils.templates import render_template
from k3forge.utils.waiters import wait_until

from .flannel import parse_version
from .helpers import attach_nat_bastion, discover_cluster_servers, split_by_role, ssh_ip
from .pipeline import Pipeline

log = logging.getLogger("k3forge")

UPGRADE_POLL_ATTEMPTS = 60
UPGRADE_POLL_INTERVAL = 30.0
SUC_SETTLE_DELAY = 30.0

CONTROL_PLANE_LABEL = "node-role.kubernetes.io/control-plane"
KUBECTL = "sudo k3s kubectl"


@dataclass(frozen=True)
class NodeStatus:
    name: str
    control_plane: bool
    kubelet_version: str
    ready: bool


def parse_node_statuses(payload: str) -> List[NodeStatus]:
    """Reads `kubectl get nodes -o json` output."""
    try:
        doc = json.loads(payload)
    except ValueError as e:
        raise K3ForgeError(f"unexpected output from kubectl get nodes: {e}") from e

    statuses = []
    for item in doc.get("items", []):
        meta = item.get("metadata", {})
        status = item.get("status", {})
        ready = any(
            c.get("type") == "Ready" and c.get("status") == "True"
            for c in status.get("conditions", [])
        )
        statuses.append(
            NodeStatus(
                name=meta.get("name", ""),
                control_plane=CONTROL_PLANE_LABEL in meta.get("labels", {}),
                kubelet_version=status.get("nodeInfo", {}).get("kubeletVersion", ""),
                ready=ready,
            )
        )
    return statuses


class Upgrader(Pipeline):
    """
    Rolls the cluster to a new k3s version through the system upgrade
    controller: servers first, one at a time, then agents two at a time.
    """

    name = "upgrade"

    def __init__(
        self,
        spec: ClusterSpec,
        provisioner: ResourceProvisioner,
        executor: RemoteExecutor,
        new_version: str,
        *,
        force: bool = False,
        **kwargs,
    ):
        super().__init__(spec, **kwargs)
        self.provisioner = provisioner
        self.executor = executor
        self.new_version = new_version
        self.force = force
        self.masters: List[Server] = []
        self.workers: List[Server] = []

    # ------------------------------------------------------------------
    def _kubectl(self, args: str, *, timeout: Optional[float] = None) -> str:
        node = self.masters[0]
        ssh = self.spec.networking.ssh
        return self.executor.run(ssh_ip(node), ssh.port, f"{KUBECTL} {args}", use_agent=ssh.use_agent, timeout=timeout)

    def _apply(self, manifest: str) -> None:
        delimiter = heredoc_delimiter(manifest)
        body = manifest if manifest.endswith("\n") else manifest + "\n"
        self._kubectl(f"apply -f - <<'{delimiter}'\n{body}{delimiter}")

    # ------------------------------------------------------------------
    def run(self) -> None:
        if not self.force:
            raise ConfirmationDeclined("upgrade rewrites every node in place; pass --force to proceed")
        parse_version(self.new_version)

        log.info("Upgrading cluster %s to %s", self.spec.cluster_name, self.new_version)
        with self.running():
            with self.step("discover nodes"):
                self.discover()
            with self.step("system upgrade controller"):
                self.ensure_upgrade_controller()
            with self.step("upgrade masters"):
                self.apply_plan("server-plan", "addons/server_plan.yaml.j2")
                self.wait_for_role(control_plane=True)
            if self.workers:
                with self.step("upgrade workers"):
                    self.apply_plan("agent-plan", "addons/agent_plan.yaml.j2")
                    self.wait_for_role(control_plane=False)
            with self.step("health check"):
                self.health_check()
        log.info("Cluster %s upgraded to %s", self.spec.cluster_name, self.new_version)

    def discover(self) -> None:
        attach_nat_bastion(self.provisioner, self.executor, self.spec)
        servers = discover_cluster_servers(self.provisioner, self.spec)
        self.masters, self.workers = split_by_role(servers)
        if not self.masters:
            raise K3ForgeError(f"no master nodes found for cluster {self.spec.cluster_name}")
        log.info("Found %d master(s) and %d worker(s)", len(self.masters), len(self.workers))

    def ensure_upgrade_controller(self) -> None:
        try:
            self._kubectl("get deployment -n system-upgrade system-upgrade-controller")
            log.info("System upgrade controller already installed")
            return
        except SSHCommandError:
            log.info("Installing system upgrade controller")

        suc = self.spec.addons.system_upgrade_controller
        self._kubectl(f"apply -f {suc.crd_manifest_url}")
        self._kubectl(f"apply -f {suc.manifest_url}")
        log.info("Waiting %.0fs for the system upgrade controller to start", SUC_SETTLE_DELAY)
        time.sleep(SUC_SETTLE_DELAY)

    def apply_plan(self, plan: str, template: str) -> None:
        self._apply(render_template(template, version=self.new_version))
        log.info("Applied %s for %s", plan, self.new_version)
        self.emit(UpgradePlanApplied, plan=plan, version=self.new_version)

    def wait_for_role(self, *, control_plane: bool) -> None:
        role = "masters" if control_plane else "workers"

        def _converged() -> Optional[Dict[str, int]]:
            nodes = [
                n for n in parse_node_statuses(self._kubectl("get nodes -o json"))
                if n.control_plane == control_plane
            ]
            upgraded = sum(1 for n in nodes if n.kubelet_version == self.new_version)
            ready = sum(1 for n in nodes if n.ready)
            log.info("%s: %d/%d upgraded, %d/%d ready", role, upgraded, len(nodes), ready, len(nodes))
            self.emit(UpgradeProgress, role=role, upgraded=upgraded, ready=ready, total=len(nodes))
            if nodes and upgraded == len(nodes) and ready == len(nodes):
                return {"upgraded": upgraded, "ready": ready}
            return None

        wait_until(
            _converged,
            retries=UPGRADE_POLL_ATTEMPTS,
            delay=UPGRADE_POLL_INTERVAL,
            error=f"{role} did not all reach {self.new_version} and Ready",
        )

    def health_check(self) -> None:
        self._kubectl("get nodes")
        self._kubectl("cluster-info")
        log.info("Cluster health check passed")
