# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/k3forge/cluster/delete.py

from __future__ import annotations

import logging
from pathlib import Path
from typing import Callable, List, Optional

from k3forge.cloud.provisioner import ResourceProvisioner
from k3forge.config.models import ClusterSpec
from k3forge.errors import AggregateError, ConfirmationDeclined, DeletionProtectedError
from k3forge.utils.parallel import run_parallel

from .helpers import (
    api_load_balancer_name,
    discover_cluster_servers,
    firewall_name,
    global_load_balancer_name,
    ssh_key_name,
)
from .pipeline import Pipeline

log = logging.getLogger("k3forge")

Prompt = Callable[[str], str]


class Deleter(Pipeline):
    """
    Tears a cluster down. Every resource category is attempted even when an
    earlier one failed; all failures are reported together at the end.
    """

    name = "delete"

    def __init__(
        self,
        spec: ClusterSpec,
        provisioner: ResourceProvisioner,
        *,
        force: bool = False,
        prompt: Prompt = input,
        **kwargs,
    ):
        super().__init__(spec, **kwargs)
        self.provisioner = provisioner
        self.force = force
        self.prompt = prompt
        self.errors: List[BaseException] = []

    def confirm(self) -> None:
        cluster = self.spec.cluster_name
        while True:
            answer = self.prompt(f"Type the cluster name '{cluster}' to confirm deletion: ").strip()
            if not answer:
                continue
            if answer != cluster:
                raise ConfirmationDeclined(f"cluster name mismatch: got '{answer}', expected '{cluster}'")
            return

    def run(self) -> None:
        spec = self.spec
        if spec.protect_against_deletion:
            raise DeletionProtectedError(
                f"cluster {spec.cluster_name} is protected against deletion; "
                "set protect_against_deletion: false to delete it"
            )
        if not self.force:
            self.confirm()

        log.info("Deleting cluster %s", spec.cluster_name)
        with self.running():
            with self.step("servers"):
                self.delete_servers()
            with self.step("load balancers"):
                self._attempt(self.delete_load_balancer, api_load_balancer_name(spec.cluster_name))
                if spec.load_balancer.enabled:
                    self._attempt(self.delete_load_balancer, global_load_balancer_name(spec))
            with self.step("network"):
                if spec.private_network_enabled:
                    self._attempt(self.delete_network)
            with self.step("firewall"):
                if spec.private_network_enabled or not spec.use_local_firewall:
                    self._attempt(self.delete_firewall)
            with self.step("ssh key"):
                self._attempt(self.delete_ssh_key)

            if self.errors:
                raise AggregateError(f"deletion of cluster {spec.cluster_name} incomplete", self.errors)

            self.remove_kubeconfig()
        log.info("Cluster %s deleted", spec.cluster_name)

    # ------------------------------------------------------------------
    def _attempt(self, fn: Callable[..., None], *args) -> None:
        try:
            fn(*args)
        except Exception as exc:
            log.error("%s", exc)
            self.errors.append(exc)

    def delete_servers(self) -> None:
        try:
            servers = discover_cluster_servers(self.provisioner, self.spec)
        except AggregateError as exc:
            self.errors.extend(exc.errors)
            return
        if not servers:
            log.info("No servers found for cluster %s", self.spec.cluster_name)
            return

        log.info("Deleting %d server(s)", len(servers))
        outcome = run_parallel(servers, self.provisioner.delete_server, label=lambda s: s.name)
        self.errors.extend(outcome.errors)

    def delete_load_balancer(self, name: str) -> None:
        lb = self.provisioner.client.get_load_balancer(name)
        if lb is None:
            log.debug("Load balancer %s not found", name)
            return
        self.provisioner.delete_load_balancer(lb)

    def delete_network(self) -> None:
        network = self.provisioner.client.get_network(self.spec.cluster_name)
        if network is None:
            log.debug("Network %s not found", self.spec.cluster_name)
            return
        self.provisioner.delete_network(network)

    def delete_firewall(self) -> None:
        name = firewall_name(self.spec.cluster_name)
        firewall = self.provisioner.client.get_firewall(name)
        if firewall is None:
            log.debug("Firewall %s not found", name)
            return
        self.provisioner.delete_firewall(firewall)

    def delete_ssh_key(self) -> None:
        name = ssh_key_name(self.spec.cluster_name)
        key = self.provisioner.client.get_ssh_key(name)
        if key is None:
            log.debug("SSH key %s not found", name)
            return
        self.provisioner.delete_ssh_key(key)

    def remove_kubeconfig(self, path: Optional[Path] = None) -> None:
        path = path or Path(self.spec.kubeconfig_path).expanduser()
        if path.exists():
            path.unlink()
            log.info("Removed kubeconfig %s", path)
