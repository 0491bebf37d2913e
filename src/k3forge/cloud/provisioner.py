# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/k3forge/cloud/provisioner.py

from __future__ import annotations

import logging
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from k3forge.errors import ActionFailedError, CloudError, ResourceNotFoundError
from k3forge.utils.retry import RetryError, retry
from k3forge.utils.waiters import attempts_for, wait_until

from .base import CloudClient
from .models import (
    ACTION_ERROR,
    ACTION_SUCCESS,
    Action,
    Certificate,
    Firewall,
    FirewallRule,
    LoadBalancer,
    LoadBalancerService,
    LoadBalancerTarget,
    Network,
    Route,
    Server,
    ServerSpec,
    SSHKey,
    Zone,
)

log = logging.getLogger("k3forge")

ACTION_POLL_INTERVAL = 1.0
ACTION_TIMEOUT = 300.0
SERVER_POLL_INTERVAL = 2.0
SERVER_STATUS_TIMEOUT = 300.0
DELETE_RETRY_INTERVAL = 2.0
DELETE_TIMEOUT = 120.0


class ResourceProvisioner:
    """
    Idempotent create/delete on top of a CloudClient.

    Every ``ensure_*`` looks the resource up by name first and only creates
    it when absent, so re-running a pipeline after a partial failure picks up
    whatever already exists. Deletes treat "not found" as success.
    """

    def __init__(self, client: CloudClient):
        self.client = client

    # ------------------------------------------------------------------
    # Actions / status polling
    # ------------------------------------------------------------------
    def wait_for_action(self, action: Action) -> Action:
        if action.status == ACTION_SUCCESS:
            return action
        if action.status == ACTION_ERROR:
            raise ActionFailedError(action.id, action.command, action.error or "unknown error")

        def _done() -> Optional[Action]:
            current = self.client.get_action(action.id)
            if current.status == ACTION_ERROR:
                raise ActionFailedError(current.id, current.command, current.error or "unknown error")
            return current if current.status == ACTION_SUCCESS else None

        return wait_until(
            _done,
            retries=attempts_for(ACTION_TIMEOUT, ACTION_POLL_INTERVAL),
            delay=ACTION_POLL_INTERVAL,
            error=f"action {action.id} ({action.command}) did not succeed",
        )

    def wait_for_actions(self, actions: Iterable[Action]) -> None:
        for action in actions:
            self.wait_for_action(action)

    def wait_for_server_status(self, server: Server, status: str = "running") -> Server:
        def _reached() -> Optional[Server]:
            current = self.client.get_server_by_id(server.id)
            if current is None:
                raise ResourceNotFoundError(f"server {server.name} disappeared while waiting for '{status}'")
            return current if current.status == status else None

        return wait_until(
            _reached,
            retries=attempts_for(SERVER_STATUS_TIMEOUT, SERVER_POLL_INTERVAL),
            delay=SERVER_POLL_INTERVAL,
            error=f"server {server.name} did not reach status '{status}'",
        )

    # ------------------------------------------------------------------
    # Ensure (get-or-create)
    # ------------------------------------------------------------------
    def ensure_ssh_key(self, name: str, public_key: str, labels: Dict[str, str]) -> SSHKey:
        existing = self.client.get_ssh_key(name)
        if existing:
            log.info("SSH key %s already exists (id=%s)", name, existing.id)
            return existing
        key = self.client.create_ssh_key(name, public_key, labels)
        log.info("Created SSH key %s (id=%s)", name, key.id)
        return key

    def ensure_network(
        self, name: str, ip_range: str, network_zone: str, labels: Dict[str, str]
    ) -> Network:
        existing = self.client.get_network(name)
        if existing:
            log.info("Network %s already exists (id=%s)", name, existing.id)
            return existing
        network = self.client.create_network(name, ip_range, network_zone, labels)
        log.info("Created network %s (%s)", name, ip_range)
        return network

    def ensure_route(self, network: Network, route: Route) -> None:
        current = self.client.get_network(network.name) or network
        if any(r.destination == route.destination for r in current.routes):
            log.info("Route %s already present on network %s", route.destination, network.name)
            return
        self.wait_for_action(self.client.add_network_route(network.id, route))
        log.info("Added route %s via %s to network %s", route.destination, route.gateway, network.name)

    def ensure_server(self, spec: ServerSpec) -> Tuple[Server, bool]:
        """Returns the server and whether this call created it."""
        existing = self.client.get_server(spec.name)
        if existing:
            log.info("Server %s already exists (id=%s)", spec.name, existing.id)
            return existing, False
        server, actions = self.client.create_server(spec)
        self.wait_for_actions(actions)
        log.info("Created server %s (%s, %s)", spec.name, spec.server_type, spec.location)
        return server, True

    def ensure_firewall(
        self,
        name: str,
        rules: Sequence[FirewallRule],
        label_selector: str,
        labels: Dict[str, str],
    ) -> Firewall:
        existing = self.client.get_firewall(name)
        if existing:
            log.info("Firewall %s already exists (id=%s)", name, existing.id)
            return existing
        firewall, actions = self.client.create_firewall(name, rules, label_selector, labels)
        self.wait_for_actions(actions)
        log.info("Created firewall %s with %d rule(s)", name, len(rules))
        return firewall

    def ensure_load_balancer(
        self,
        name: str,
        lb_type: str,
        location: str,
        algorithm: str,
        services: Sequence[LoadBalancerService],
        labels: Dict[str, str],
    ) -> LoadBalancer:
        existing = self.client.get_load_balancer(name)
        if existing:
            log.info("Load balancer %s already exists (id=%s)", name, existing.id)
            return existing
        lb, actions = self.client.create_load_balancer(name, lb_type, location, algorithm, services, labels)
        self.wait_for_actions(actions)
        log.info("Created load balancer %s (%s, %s)", name, lb_type, location)
        return lb

    def attach_load_balancer(self, lb: LoadBalancer, network: Network) -> None:
        if any(pn.network_id == network.id for pn in lb.private_net):
            log.info("Load balancer %s already attached to network %s", lb.name, network.name)
            return
        self.wait_for_action(self.client.attach_load_balancer_to_network(lb.id, network.id))
        log.info("Attached load balancer %s to network %s", lb.name, network.name)

    def add_load_balancer_target(self, lb: LoadBalancer, target: LoadBalancerTarget) -> None:
        current = self.client.get_load_balancer(lb.name) or lb
        if any(t.label_selector == target.label_selector for t in current.targets):
            log.info("Load balancer %s already targets %s", lb.name, target.label_selector)
            return
        self.wait_for_action(self.client.add_load_balancer_target(lb.id, target))
        log.info(
            "Load balancer %s now targets %s (private ip: %s)",
            lb.name, target.label_selector, target.use_private_ip,
        )

    def ensure_zone(self, name: str, ttl: int, labels: Dict[str, str]) -> Zone:
        existing = self.client.get_zone(name)
        if existing:
            log.info("DNS zone %s already exists (id=%s)", name, existing.id)
            return existing
        zone = self.client.create_zone(name, ttl, labels)
        log.info("Created DNS zone %s", name)
        return zone

    def ensure_managed_certificate(
        self, name: str, domain_names: Sequence[str], labels: Dict[str, str]
    ) -> Certificate:
        existing = self.client.get_certificate(name)
        if existing:
            log.info("Certificate %s already exists (id=%s)", name, existing.id)
            return existing
        cert, actions = self.client.create_managed_certificate(name, domain_names, labels)
        self.wait_for_actions(actions)
        log.info("Created managed certificate %s for %s", name, ", ".join(domain_names))
        return cert

    # ------------------------------------------------------------------
    # Delete
    # ------------------------------------------------------------------
    def delete_server(self, server: Server) -> None:
        try:
            action = self.client.delete_server(server.id)
        except ResourceNotFoundError:
            log.debug("Server %s already gone", server.name)
            return
        self.wait_for_action(action)
        log.info("Deleted server %s", server.name)

    def delete_ssh_key(self, key: SSHKey) -> None:
        try:
            self.client.delete_ssh_key(key.id)
        except ResourceNotFoundError:
            log.debug("SSH key %s already gone", key.name)
            return
        log.info("Deleted SSH key %s", key.name)

    def delete_network(self, network: Network) -> None:
        self._delete_with_retry("network", network.name, lambda: self.client.delete_network(network.id))

    def delete_firewall(self, firewall: Firewall) -> None:
        self._delete_with_retry("firewall", firewall.name, lambda: self.client.delete_firewall(firewall.id))

    def delete_load_balancer(self, lb: LoadBalancer) -> None:
        self._delete_with_retry("load balancer", lb.name, lambda: self.client.delete_load_balancer(lb.id))

    def _delete_with_retry(self, kind: str, name: str, delete: Callable[[], None]) -> None:
        # networks and firewalls stay in use for a while after their servers go away
        @retry(
            retries=attempts_for(DELETE_TIMEOUT, DELETE_RETRY_INTERVAL),
            delay=DELETE_RETRY_INTERVAL,
            retry_on=(CloudError,),
            on_retry=lambda attempt, exc: log.debug(
                "delete %s %s failed (attempt %d): %s", kind, name, attempt, exc
            ),
        )
        def _attempt() -> bool:
            try:
                delete()
            except ResourceNotFoundError:
                return False
            return True

        try:
            deleted = _attempt()
        except RetryError as e:
            raise CloudError(f"failed to delete {kind} {name}: {e.__cause__}") from e.__cause__
        if deleted:
            log.info("Deleted %s %s", kind, name)
        else:
            log.debug("%s %s already gone", kind.capitalize(), name)

    def list_servers(self, label_selector: str) -> List[Server]:
        return self.client.list_servers(label_selector)
