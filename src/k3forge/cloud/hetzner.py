# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/k3forge/cloud/hetzner.py

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Dict, Iterator, List, Optional, Sequence, Tuple

from hcloud import APIException, Client
from hcloud.certificates import Certificate as HCertificate
from hcloud.firewalls import (
    FirewallResource,
    FirewallResourceLabelSelector,
    FirewallRule as HFirewallRule,
)
from hcloud.images import Image
from hcloud.load_balancer_types import LoadBalancerType
from hcloud.load_balancers import (
    LoadBalancerAlgorithm,
    LoadBalancerHealthCheck,
    LoadBalancerService as HLoadBalancerService,
    LoadBalancerServiceHttp,
    LoadBalancerTarget as HLoadBalancerTarget,
    LoadBalancerTargetLabelSelector,
)
from hcloud.locations import Location
from hcloud.networks import Network as HNetwork, NetworkRoute, NetworkSubnet
from hcloud.server_types import ServerType
from hcloud.servers import Server as HServer, ServerCreatePublicNetwork
from hcloud.ssh_keys import SSHKey as HSSHKey

from k3forge.errors import CloudError, ResourceNotFoundError

from .models import (
    Action,
    Certificate,
    Firewall,
    FirewallRule,
    HealthCheck,
    LoadBalancer,
    LoadBalancerService,
    LoadBalancerTarget,
    Network,
    PrivateNet,
    Route,
    Server,
    ServerSpec,
    SSHKey,
    Zone,
)

log = logging.getLogger("k3forge")

# (connect, read) seconds for every API request
API_TIMEOUT: Tuple[float, float] = (10.0, 60.0)


@contextmanager
def _api(what: str) -> Iterator[None]:
    try:
        yield
    except APIException as e:
        if e.code == "not_found":
            raise ResourceNotFoundError(f"{what}: {e.message}") from e
        raise CloudError(f"{what}: {e.message} ({e.code})") from e


# ---------------------------------------------------------------------
# SDK object -> domain record
# ---------------------------------------------------------------------
def _action(a) -> Action:
    error = None
    if a.error:
        error = a.error.get("message") if isinstance(a.error, dict) else str(a.error)
    return Action(id=a.id, command=a.command, status=a.status, error=error)


def _private_net(entries) -> Tuple[PrivateNet, ...]:
    return tuple(PrivateNet(network_id=pn.network.id, ip=pn.ip) for pn in (entries or []))


def _server(s) -> Server:
    public = s.public_net
    ipv4 = public.ipv4.ip if public and public.ipv4 else None
    ipv6 = public.ipv6.ip if public and public.ipv6 else None
    return Server(
        id=s.id,
        name=s.name,
        status=s.status,
        labels=dict(s.labels or {}),
        public_ipv4=ipv4,
        public_ipv6=ipv6,
        private_net=_private_net(s.private_net),
    )


def _network(n) -> Network:
    return Network(
        id=n.id,
        name=n.name,
        ip_range=n.ip_range,
        routes=tuple(Route(destination=r.destination, gateway=r.gateway) for r in (n.routes or [])),
        labels=dict(n.labels or {}),
    )


def _firewall(f) -> Firewall:
    selector = None
    for res in f.applied_to or []:
        if res.type == "label_selector" and res.label_selector:
            selector = res.label_selector.selector
    rules = tuple(
        FirewallRule(
            direction=r.direction,
            protocol=r.protocol,
            source_ips=tuple(r.source_ips or ()),
            port=r.port,
            description=r.description,
        )
        for r in (f.rules or [])
    )
    return Firewall(id=f.id, name=f.name, rules=rules, label_selector=selector, labels=dict(f.labels or {}))


def _load_balancer(lb) -> LoadBalancer:
    public = lb.public_net
    targets = tuple(
        LoadBalancerTarget(label_selector=t.label_selector.selector, use_private_ip=bool(t.use_private_ip))
        for t in (lb.targets or [])
        if t.type == "label_selector" and t.label_selector
    )
    return LoadBalancer(
        id=lb.id,
        name=lb.name,
        public_ipv4=public.ipv4.ip if public and public.ipv4 else None,
        private_net=_private_net(lb.private_net),
        targets=targets,
        labels=dict(lb.labels or {}),
    )


def _zone(data: dict) -> Zone:
    nameservers = (data.get("authoritative_nameservers") or {}).get("assigned") or []
    return Zone(id=data["id"], name=data["name"], ttl=data.get("ttl", 0), nameservers=tuple(nameservers))


def _sdk_service(svc: LoadBalancerService) -> HLoadBalancerService:
    hc = None
    if svc.health_check:
        hc = LoadBalancerHealthCheck(
            protocol=svc.health_check.protocol,
            port=svc.health_check.port,
            interval=svc.health_check.interval,
            timeout=svc.health_check.timeout,
            retries=svc.health_check.retries,
        )
    http = None
    if svc.protocol in ("http", "https"):
        http = LoadBalancerServiceHttp(
            certificates=[HCertificate(id=cid) for cid in svc.certificate_ids] or None,
        )
    return HLoadBalancerService(
        protocol=svc.protocol,
        listen_port=svc.listen_port,
        destination_port=svc.destination_port,
        proxyprotocol=svc.proxyprotocol,
        health_check=hc,
        http=http,
    )


class HetznerCloudClient:
    """CloudClient backed by the hcloud SDK."""

    def __init__(
        self,
        token: str,
        *,
        application_version: str = "0.1.0",
        timeout: Tuple[float, float] = API_TIMEOUT,
        client: Optional[Client] = None,
    ):
        self._client = client or Client(
            token=token,
            application_name="k3forge",
            application_version=application_version,
            timeout=timeout,
        )

    # ------------------ ssh keys ------------------

    def get_ssh_key(self, name: str) -> Optional[SSHKey]:
        with _api(f"get ssh key {name}"):
            key = self._client.ssh_keys.get_by_name(name)
        if key is None:
            return None
        return SSHKey(id=key.id, name=key.name, public_key=key.public_key, labels=dict(key.labels or {}))

    def create_ssh_key(self, name: str, public_key: str, labels: Dict[str, str]) -> SSHKey:
        with _api(f"create ssh key {name}"):
            key = self._client.ssh_keys.create(name=name, public_key=public_key, labels=labels)
        return SSHKey(id=key.id, name=key.name, public_key=key.public_key, labels=dict(labels))

    def delete_ssh_key(self, key_id: int) -> None:
        with _api(f"delete ssh key {key_id}"):
            self._client.ssh_keys.delete(HSSHKey(id=key_id))

    # ------------------ networks ------------------

    def get_network(self, name: str) -> Optional[Network]:
        with _api(f"get network {name}"):
            net = self._client.networks.get_by_name(name)
        return _network(net) if net else None

    def create_network(self, name: str, ip_range: str, network_zone: str, labels: Dict[str, str]) -> Network:
        with _api(f"create network {name}"):
            net = self._client.networks.create(
                name=name,
                ip_range=ip_range,
                subnets=[NetworkSubnet(type="cloud", ip_range=ip_range, network_zone=network_zone)],
                labels=labels,
            )
        return _network(net)

    def add_network_route(self, network_id: int, route: Route) -> Action:
        with _api(f"add route {route.destination} to network {network_id}"):
            action = self._client.networks.add_route(
                HNetwork(id=network_id),
                NetworkRoute(destination=route.destination, gateway=route.gateway),
            )
        return _action(action)

    def delete_network(self, network_id: int) -> None:
        with _api(f"delete network {network_id}"):
            self._client.networks.delete(HNetwork(id=network_id))

    # ------------------ servers ------------------

    def get_server(self, name: str) -> Optional[Server]:
        with _api(f"get server {name}"):
            server = self._client.servers.get_by_name(name)
        return _server(server) if server else None

    def get_server_by_id(self, server_id: int) -> Optional[Server]:
        try:
            with _api(f"get server {server_id}"):
                server = self._client.servers.get_by_id(server_id)
        except ResourceNotFoundError:
            return None
        return _server(server)

    def list_servers(self, label_selector: str) -> List[Server]:
        with _api(f"list servers {label_selector}"):
            servers = self._client.servers.get_all(label_selector=label_selector)
        return [_server(s) for s in servers]

    def create_server(self, spec: ServerSpec) -> Tuple[Server, List[Action]]:
        with _api(f"create server {spec.name}"):
            resp = self._client.servers.create(
                name=spec.name,
                server_type=ServerType(name=spec.server_type),
                image=Image(name=spec.image),
                location=Location(name=spec.location),
                ssh_keys=[HSSHKey(id=i) for i in spec.ssh_key_ids],
                networks=[HNetwork(id=i) for i in spec.network_ids],
                user_data=spec.user_data or None,
                labels=dict(spec.labels),
                public_net=ServerCreatePublicNetwork(
                    enable_ipv4=spec.enable_ipv4,
                    enable_ipv6=spec.enable_ipv6,
                ),
            )
        # next_actions carry the network attachments
        actions = [_action(resp.action)] + [_action(a) for a in (resp.next_actions or [])]
        return _server(resp.server), actions

    def delete_server(self, server_id: int) -> Action:
        with _api(f"delete server {server_id}"):
            action = self._client.servers.delete(HServer(id=server_id))
        return _action(action)

    # ------------------ firewalls ------------------

    def get_firewall(self, name: str) -> Optional[Firewall]:
        with _api(f"get firewall {name}"):
            fw = self._client.firewalls.get_by_name(name)
        return _firewall(fw) if fw else None

    def create_firewall(
        self,
        name: str,
        rules: Sequence[FirewallRule],
        label_selector: str,
        labels: Dict[str, str],
    ) -> Tuple[Firewall, List[Action]]:
        sdk_rules = [
            HFirewallRule(
                direction=r.direction,
                protocol=r.protocol,
                source_ips=list(r.source_ips),
                port=r.port,
                description=r.description,
            )
            for r in rules
        ]
        with _api(f"create firewall {name}"):
            resp = self._client.firewalls.create(
                name=name,
                rules=sdk_rules,
                labels=labels,
                resources=[
                    FirewallResource(
                        type="label_selector",
                        label_selector=FirewallResourceLabelSelector(selector=label_selector),
                    )
                ],
            )
        return _firewall(resp.firewall), [_action(a) for a in (resp.actions or [])]

    def delete_firewall(self, firewall_id: int) -> None:
        with _api(f"delete firewall {firewall_id}"):
            fw = self._client.firewalls.get_by_id(firewall_id)
            self._client.firewalls.delete(fw)

    # ------------------ load balancers ------------------

    def get_load_balancer(self, name: str) -> Optional[LoadBalancer]:
        with _api(f"get load balancer {name}"):
            lb = self._client.load_balancers.get_by_name(name)
        return _load_balancer(lb) if lb else None

    def create_load_balancer(
        self,
        name: str,
        lb_type: str,
        location: str,
        algorithm: str,
        services: Sequence[LoadBalancerService],
        labels: Dict[str, str],
    ) -> Tuple[LoadBalancer, List[Action]]:
        with _api(f"create load balancer {name}"):
            resp = self._client.load_balancers.create(
                name=name,
                load_balancer_type=LoadBalancerType(name=lb_type),
                location=Location(name=location),
                algorithm=LoadBalancerAlgorithm(type=algorithm),
                services=[_sdk_service(s) for s in services],
                labels=labels,
            )
        return _load_balancer(resp.load_balancer), [_action(resp.action)] if resp.action else []

    def attach_load_balancer_to_network(self, lb_id: int, network_id: int) -> Action:
        with _api(f"attach load balancer {lb_id} to network {network_id}"):
            lb = self._client.load_balancers.get_by_id(lb_id)
            action = self._client.load_balancers.attach_to_network(lb, HNetwork(id=network_id))
        return _action(action)

    def add_load_balancer_target(self, lb_id: int, target: LoadBalancerTarget) -> Action:
        with _api(f"add target {target.label_selector} to load balancer {lb_id}"):
            lb = self._client.load_balancers.get_by_id(lb_id)
            action = self._client.load_balancers.add_target(
                lb,
                HLoadBalancerTarget(
                    type="label_selector",
                    label_selector=LoadBalancerTargetLabelSelector(selector=target.label_selector),
                    use_private_ip=target.use_private_ip,
                ),
            )
        return _action(action)

    def delete_load_balancer(self, lb_id: int) -> None:
        with _api(f"delete load balancer {lb_id}"):
            lb = self._client.load_balancers.get_by_id(lb_id)
            self._client.load_balancers.delete(lb)

    # ------------------ dns zones ------------------

    def get_zone(self, name: str) -> Optional[Zone]:
        with _api(f"get dns zone {name}"):
            data = self._client.request(method="GET", url="/zones", params={"name": name})
        for zone in data.get("zones", []):
            if zone.get("name") == name:
                return _zone(zone)
        return None

    def create_zone(self, name: str, ttl: int, labels: Dict[str, str]) -> Zone:
        with _api(f"create dns zone {name}"):
            data = self._client.request(
                method="POST",
                url="/zones",
                json={"name": name, "mode": "primary", "ttl": ttl, "labels": labels},
            )
        return _zone(data["zone"])

    # ------------------ certificates ------------------

    def get_certificate(self, name: str) -> Optional[Certificate]:
        with _api(f"get certificate {name}"):
            cert = self._client.certificates.get_by_name(name)
        if cert is None:
            return None
        return Certificate(id=cert.id, name=cert.name, domain_names=tuple(cert.domain_names or ()))

    def create_managed_certificate(
        self, name: str, domain_names: Sequence[str], labels: Dict[str, str]
    ) -> Tuple[Certificate, List[Action]]:
        with _api(f"create certificate {name}"):
            resp = self._client.certificates.create_managed(
                name=name, domain_names=list(domain_names), labels=labels
            )
        cert = resp.certificate
        return (
            Certificate(id=cert.id, name=cert.name, domain_names=tuple(domain_names), labels=dict(labels)),
            [_action(resp.action)] if resp.action else [],
        )

    # ------------------ actions ------------------

    def get_action(self, action_id: int) -> Action:
        with _api(f"get action {action_id}"):
            action = self._client.actions.get_by_id(action_id)
        return _action(action)
