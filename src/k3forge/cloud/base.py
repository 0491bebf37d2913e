# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/k3forge/cloud/base.py

from __future__ import annotations

from typing import Dict, List, Optional, Protocol, Sequence, Tuple

from .models import (
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


class CloudClient(Protocol):
    """
    What the pipelines need from a cloud provider.

    ``get_*`` lookups are by name and return None when nothing matches.
    ``delete_*`` raise ResourceNotFoundError for missing resources and
    CloudError for any other provider failure. Operations that the provider
    runs asynchronously hand back the Action(s) to wait on.
    """

    # ssh keys
    def get_ssh_key(self, name: str) -> Optional[SSHKey]: ...
    def create_ssh_key(self, name: str, public_key: str, labels: Dict[str, str]) -> SSHKey: ...
    def delete_ssh_key(self, key_id: int) -> None: ...

    # networks
    def get_network(self, name: str) -> Optional[Network]: ...
    def create_network(
        self, name: str, ip_range: str, network_zone: str, labels: Dict[str, str]
    ) -> Network: ...
    def add_network_route(self, network_id: int, route: Route) -> Action: ...
    def delete_network(self, network_id: int) -> None: ...

    # servers
    def get_server(self, name: str) -> Optional[Server]: ...
    def get_server_by_id(self, server_id: int) -> Optional[Server]: ...
    def list_servers(self, label_selector: str) -> List[Server]: ...
    def create_server(self, spec: ServerSpec) -> Tuple[Server, List[Action]]: ...
    def delete_server(self, server_id: int) -> Action: ...

    # firewalls
    def get_firewall(self, name: str) -> Optional[Firewall]: ...
    def create_firewall(
        self,
        name: str,
        rules: Sequence[FirewallRule],
        label_selector: str,
        labels: Dict[str, str],
    ) -> Tuple[Firewall, List[Action]]: ...
    def delete_firewall(self, firewall_id: int) -> None: ...

    # load balancers
    def get_load_balancer(self, name: str) -> Optional[LoadBalancer]: ...
    def create_load_balancer(
        self,
        name: str,
        lb_type: str,
        location: str,
        algorithm: str,
        services: Sequence[LoadBalancerService],
        labels: Dict[str, str],
    ) -> Tuple[LoadBalancer, List[Action]]: ...
    def attach_load_balancer_to_network(self, lb_id: int, network_id: int) -> Action: ...
    def add_load_balancer_target(self, lb_id: int, target: LoadBalancerTarget) -> Action: ...
    def delete_load_balancer(self, lb_id: int) -> None: ...

    # dns / certificates
    def get_zone(self, name: str) -> Optional[Zone]: ...
    def create_zone(self, name: str, ttl: int, labels: Dict[str, str]) -> Zone: ...
    def get_certificate(self, name: str) -> Optional[Certificate]: ...
    def create_managed_certificate(
        self, name: str, domain_names: Sequence[str], labels: Dict[str, str]
    ) -> Tuple[Certificate, List[Action]]: ...

    # actions
    def get_action(self, action_id: int) -> Action: ...
