# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/k3forge/cloud/models.py

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple

ACTION_RUNNING = "running"
ACTION_SUCCESS = "success"
ACTION_ERROR = "error"


@dataclass(frozen=True)
class Action:
    id: int
    command: str
    status: str = ACTION_RUNNING
    error: Optional[str] = None


@dataclass(frozen=True)
class PrivateNet:
    network_id: int
    ip: str


@dataclass(frozen=True)
class Server:
    id: int
    name: str
    status: str
    labels: Dict[str, str] = field(default_factory=dict)
    public_ipv4: Optional[str] = None
    public_ipv6: Optional[str] = None
    private_net: Tuple[PrivateNet, ...] = ()

    @property
    def private_ip(self) -> Optional[str]:
        return self.private_net[0].ip if self.private_net else None

    @property
    def address(self) -> Optional[str]:
        """Public IPv4 when present, otherwise the first private IP."""
        return self.public_ipv4 or self.private_ip


@dataclass(frozen=True)
class ServerSpec:
    name: str
    server_type: str
    image: str
    location: str
    ssh_key_ids: Tuple[int, ...] = ()
    network_ids: Tuple[int, ...] = ()
    labels: Dict[str, str] = field(default_factory=dict)
    user_data: str = ""
    enable_ipv4: bool = True
    enable_ipv6: bool = True


@dataclass(frozen=True)
class Route:
    destination: str
    gateway: str


@dataclass(frozen=True)
class Network:
    id: int
    name: str
    ip_range: str
    routes: Tuple[Route, ...] = ()
    labels: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class FirewallRule:
    direction: str
    protocol: str
    source_ips: Tuple[str, ...]
    port: Optional[str] = None
    description: Optional[str] = None


@dataclass(frozen=True)
class Firewall:
    id: int
    name: str
    rules: Tuple[FirewallRule, ...] = ()
    label_selector: Optional[str] = None
    labels: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class HealthCheck:
    protocol: str
    port: int
    interval: int
    timeout: int
    retries: int


@dataclass(frozen=True)
class LoadBalancerService:
    protocol: str
    listen_port: int
    destination_port: int
    proxyprotocol: bool = False
    health_check: Optional[HealthCheck] = None
    certificate_ids: Tuple[int, ...] = ()


@dataclass(frozen=True)
class LoadBalancerTarget:
    label_selector: str
    use_private_ip: bool


@dataclass(frozen=True)
class LoadBalancer:
    id: int
    name: str
    public_ipv4: Optional[str] = None
    private_net: Tuple[PrivateNet, ...] = ()
    services: Tuple[LoadBalancerService, ...] = ()
    targets: Tuple[LoadBalancerTarget, ...] = ()
    labels: Dict[str, str] = field(default_factory=dict)

    @property
    def private_ip(self) -> Optional[str]:
        return self.private_net[0].ip if self.private_net else None


@dataclass(frozen=True)
class SSHKey:
    id: int
    name: str
    public_key: str
    labels: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class Zone:
    id: int
    name: str
    ttl: int
    nameservers: Tuple[str, ...] = ()


@dataclass(frozen=True)
class Certificate:
    id: int
    name: str
    domain_names: Tuple[str, ...] = ()
    labels: Dict[str, str] = field(default_factory=dict)

