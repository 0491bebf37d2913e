# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/k3forge/config/models.py

from __future__ import annotations

import ipaddress
import os
import re
from pathlib import Path
from typing import Any, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

CLUSTER_NAME_RE = re.compile(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$")
K3S_VERSION_RE = re.compile(r"^v\d+\.\d+\.\d+\+k3s\d+$")
DOMAIN_RE = re.compile(
    r"^(?:[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?\.)+[a-z0-9][a-z0-9-]{0,61}[a-z0-9]$"
)

DEFAULT_LOCATION = "fsn1"
DEFAULT_CILIUM_VERSION = "1.17.2"


class _Model(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)


def _is_cidr(value: str) -> bool:
    try:
        ipaddress.ip_network(value, strict=False)
    except ValueError:
        return False
    return True


def _expand(path: str) -> Path:
    return Path(path).expanduser().resolve()


# ---------------------------------------------------------------------
# Node pools
# ---------------------------------------------------------------------
class Label(_Model):
    key: str
    value: str


class Taint(_Model):
    key: str
    value: str = ""
    effect: str


class Autoscaling(_Model):
    enabled: bool = False
    min_instances: int = 0
    max_instances: int = 0


class MastersPool(_Model):
    instance_type: str
    instance_count: int = 1
    locations: List[str] = Field(default_factory=lambda: [DEFAULT_LOCATION])
    image: Optional[str] = None
    labels: List[Label] = Field(default_factory=list)
    taints: List[Taint] = Field(default_factory=list)
    additional_packages: List[str] = Field(default_factory=list)
    additional_pre_k3s_commands: List[str] = Field(default_factory=list)
    additional_post_k3s_commands: List[str] = Field(default_factory=list)


class WorkerPool(_Model):
    name: str
    instance_type: str
    instance_count: int = 1
    location: str = DEFAULT_LOCATION
    image: Optional[str] = None
    autoscaling: Optional[Autoscaling] = None
    include_cluster_name_as_prefix: bool = True
    labels: List[Label] = Field(default_factory=list)
    taints: List[Taint] = Field(default_factory=list)
    additional_packages: List[str] = Field(default_factory=list)
    additional_pre_k3s_commands: List[str] = Field(default_factory=list)
    additional_post_k3s_commands: List[str] = Field(default_factory=list)

    @property
    def autoscaling_enabled(self) -> bool:
        return self.autoscaling is not None and self.autoscaling.enabled

    def node_group_name(self, cluster_name: str) -> str:
        """Node group name the cluster autoscaler registers and labels its servers with."""
        if self.include_cluster_name_as_prefix:
            return f"{cluster_name}-{self.name}"
        return self.name


# ---------------------------------------------------------------------
# Networking
# ---------------------------------------------------------------------
class NATGateway(_Model):
    enabled: bool = False
    instance_type: str = "cpx11"
    location: Optional[str] = None


class PrivateNetwork(_Model):
    enabled: bool = True
    subnet: str = "10.0.0.0/16"
    network_zone: str = "eu-central"
    nat_gateway: Optional[NATGateway] = None


class PublicNetwork(_Model):
    ipv4: bool = True
    ipv6: bool = True
    use_local_firewall: bool = False

    @field_validator("ipv4", "ipv6", mode="before")
    @classmethod
    def _accept_enabled_block(cls, v: Any) -> Any:
        # both "ipv4: false" and "ipv4: {enabled: false}" are accepted
        if isinstance(v, dict):
            return bool(v.get("enabled", False))
        return v


class AllowedNetworks(_Model):
    ssh: List[str] = Field(default_factory=lambda: ["0.0.0.0/0"])
    api: List[str] = Field(default_factory=lambda: ["0.0.0.0/0"])


class SSHSettings(_Model):
    port: int = 22
    user: str = "root"
    use_agent: bool = False
    private_key_path: str = "~/.ssh/id_rsa"
    public_key_path: str = "~/.ssh/id_rsa.pub"

    @property
    def expanded_private_key_path(self) -> Path:
        return _expand(self.private_key_path)

    @property
    def expanded_public_key_path(self) -> Path:
        return _expand(self.public_key_path)


class Flannel(_Model):
    encryption: bool = True
    disable_kube_proxy: bool = False


class Cilium(_Model):
    version: str = DEFAULT_CILIUM_VERSION
    encryption_type: Literal["wireguard", "ipsec"] = "wireguard"
    routing_mode: Literal["tunnel", "native"] = "tunnel"
    tunnel_protocol: Literal["vxlan", "geneve"] = "vxlan"
    hubble_enabled: bool = True


class CNI(_Model):
    enabled: bool = True
    mode: Literal["flannel", "cilium"] = "flannel"
    flannel: Flannel = Field(default_factory=Flannel)
    cilium: Cilium = Field(default_factory=Cilium)


class Networking(_Model):
    cni: CNI = Field(default_factory=CNI)
    private_network: PrivateNetwork = Field(default_factory=PrivateNetwork)
    public_network: PublicNetwork = Field(default_factory=PublicNetwork)
    allowed_networks: AllowedNetworks = Field(default_factory=AllowedNetworks)
    ssh: SSHSettings = Field(default_factory=SSHSettings)
    cluster_cidr: str = "10.244.0.0/16"
    service_cidr: str = "10.43.0.0/16"
    cluster_dns: str = "10.43.0.10"


# ---------------------------------------------------------------------
# Addons
# ---------------------------------------------------------------------
class Toggle(_Model):
    enabled: bool = False


class ManifestAddon(_Model):
    enabled: bool = True
    manifest_url: str


class CSIDriver(ManifestAddon):
    manifest_url: str = (
        "https://raw.githubusercontent.com/hetznercloud/csi-driver/v2.12.0/"
        "deploy/kubernetes/hcloud-csi.yml"
    )


class CloudControllerManager(ManifestAddon):
    manifest_url: str = (
        "https://github.com/hetznercloud/hcloud-cloud-controller-manager/"
        "releases/download/v1.23.0/ccm-networks.yaml"
    )


class SystemUpgradeController(ManifestAddon):
    manifest_url: str = (
        "https://github.com/rancher/system-upgrade-controller/releases/latest/"
        "download/system-upgrade-controller.yaml"
    )
    crd_manifest_url: str = (
        "https://github.com/rancher/system-upgrade-controller/releases/latest/"
        "download/crd.yaml"
    )


class ClusterAutoscaler(_Model):
    enabled: bool = True
    image: str = "registry.k8s.io/autoscaling/cluster-autoscaler:v1.32.0"
    scan_interval: str = "10s"
    scale_down_delay_after_add: str = "10m"
    scale_down_unneeded_time: str = "10m"


class Addons(_Model):
    traefik: Toggle = Field(default_factory=Toggle)
    servicelb: Toggle = Field(default_factory=Toggle)
    metrics_server: Toggle = Field(default_factory=Toggle)
    local_path_storage_class: Toggle = Field(default_factory=Toggle)
    embedded_registry_mirror: Toggle = Field(default_factory=lambda: Toggle(enabled=True))
    csi_driver: CSIDriver = Field(default_factory=CSIDriver)
    cloud_controller_manager: CloudControllerManager = Field(default_factory=CloudControllerManager)
    system_upgrade_controller: SystemUpgradeController = Field(default_factory=SystemUpgradeController)
    cluster_autoscaler: ClusterAutoscaler = Field(default_factory=ClusterAutoscaler)


# ---------------------------------------------------------------------
# Load balancer / DNS / certificate
# ---------------------------------------------------------------------
class HealthCheck(_Model):
    protocol: Literal["tcp", "http", "https"] = "tcp"
    port: int
    interval: int = 15
    timeout: int = 10
    retries: int = 3


class LoadBalancerService(_Model):
    protocol: Literal["tcp", "http", "https"]
    listen_port: int
    destination_port: int
    proxyprotocol: bool = False
    health_check: Optional[HealthCheck] = None


def _default_services() -> List[dict]:
    return [
        {
            "protocol": "tcp",
            "listen_port": port,
            "destination_port": port,
            "health_check": {"protocol": "tcp", "port": port, "interval": 15, "timeout": 10, "retries": 3},
        }
        for port in (80, 443)
    ]


class LoadBalancerSettings(_Model):
    enabled: bool = False
    name: Optional[str] = None
    type: Literal["lb11", "lb21", "lb31"] = "lb11"
    location: Optional[str] = None
    algorithm: Literal["round_robin", "least_connections"] = "round_robin"
    services: List[LoadBalancerService] = Field(default_factory=list)
    target_pools: List[str] = Field(default_factory=list)
    use_private_ip: Optional[bool] = None
    attach_to_network: bool = False

    @model_validator(mode="before")
    @classmethod
    def _defaults(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        if isinstance(data.get("algorithm"), dict):
            data["algorithm"] = data["algorithm"].get("type", "round_robin")
        if isinstance(data.get("target_pools"), str):
            data["target_pools"] = [data["target_pools"]]
        if data.get("enabled") and not data.get("services"):
            data["services"] = _default_services()
        return data

    @property
    def has_https_service(self) -> bool:
        return any(s.protocol == "https" for s in self.services)


class DNSZone(_Model):
    enabled: bool = False
    name: Optional[str] = None
    ttl: int = 3600


class SSLCertificate(_Model):
    enabled: bool = False
    name: Optional[str] = None
    domain: Optional[str] = None


# ---------------------------------------------------------------------
# Cluster
# ---------------------------------------------------------------------
class ClusterSpec(_Model):
    hetzner_token: str = ""
    cluster_name: str
    kubeconfig_path: str = "./kubeconfig"
    k3s_version: str
    domain: Optional[str] = None
    api_server_hostname: Optional[str] = None
    image: str = "ubuntu-24.04"
    masters_pool: MastersPool
    worker_node_pools: List[WorkerPool] = Field(default_factory=list)
    networking: Networking = Field(default_factory=Networking)
    addons: Addons = Field(default_factory=Addons)
    create_load_balancer_for_the_kubernetes_api: bool = False
    load_balancer: LoadBalancerSettings = Field(default_factory=LoadBalancerSettings)
    dns_zone: DNSZone = Field(default_factory=DNSZone)
    ssl_certificate: SSLCertificate = Field(default_factory=SSLCertificate)
    protect_against_deletion: bool = True
    additional_packages: List[str] = Field(default_factory=list)
    additional_pre_k3s_commands: List[str] = Field(default_factory=list)
    additional_post_k3s_commands: List[str] = Field(default_factory=list)
    kubelet_args: List[str] = Field(default_factory=list)

    @field_validator("hetzner_token", mode="before")
    @classmethod
    def _token_from_env(cls, v: Any) -> Any:
        return v or os.environ.get("HCLOUD_TOKEN", "")

    @field_validator("cluster_name")
    @classmethod
    def _check_cluster_name(cls, v: str) -> str:
        if len(v) > 63:
            raise ValueError("cluster_name must be 63 characters or less")
        if not CLUSTER_NAME_RE.match(v):
            raise ValueError(
                "cluster_name must start and end with alphanumeric, "
                "contain only lowercase letters, numbers, and hyphens"
            )
        return v

    @field_validator("k3s_version")
    @classmethod
    def _check_k3s_version(cls, v: str) -> str:
        if not K3S_VERSION_RE.match(v):
            raise ValueError("k3s_version must match format vX.Y.Z+k3sN (e.g., v1.32.0+k3s1)")
        return v

    @field_validator("domain")
    @classmethod
    def _check_domain(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        if len(v) > 253 or not DOMAIN_RE.match(v):
            raise ValueError("domain must be a valid DNS name (e.g., example.com)")
        return v

    @model_validator(mode="after")
    def _cross_checks(self) -> "ClusterSpec":
        problems = self._problems()
        if problems:
            raise ValueError("; ".join(problems))
        return self

    def _problems(self) -> List[str]:
        problems: List[str] = []
        net = self.networking
        private = net.private_network

        if private.enabled and not _is_cidr(private.subnet):
            problems.append(f"invalid private network subnet CIDR: {private.subnet}")
        for cidr in net.allowed_networks.ssh:
            if not _is_cidr(cidr):
                problems.append(f"invalid SSH allowed network CIDR: {cidr}")
        for cidr in net.allowed_networks.api:
            if not _is_cidr(cidr):
                problems.append(f"invalid API allowed network CIDR: {cidr}")
        if not 1 <= net.ssh.port <= 65535:
            problems.append("SSH port must be between 1 and 65535")

        if self.masters_pool.instance_count < 1:
            problems.append("master instance_count must be at least 1")
        if not self.masters_pool.locations:
            problems.append("at least one master location is required")

        seen = set()
        for pool in self.worker_node_pools:
            if pool.name in seen:
                problems.append(f"duplicate worker pool name: {pool.name}")
            seen.add(pool.name)
            if pool.autoscaling_enabled:
                if pool.autoscaling.min_instances < 0:
                    problems.append(f"worker pool {pool.name}: autoscaling min_instances cannot be negative")
                if pool.autoscaling.max_instances <= pool.autoscaling.min_instances:
                    problems.append(
                        f"worker pool {pool.name}: autoscaling max_instances must be greater than min_instances"
                    )
            elif pool.instance_count < 1:
                problems.append(f"worker pool {pool.name}: instance_count must be at least 1")

        lb = self.load_balancer
        if lb.enabled:
            for i, svc in enumerate(lb.services, start=1):
                for label, port in (("listen_port", svc.listen_port), ("destination_port", svc.destination_port)):
                    if not 1 <= port <= 65535:
                        problems.append(f"load_balancer: service {i} has invalid {label} {port}")
                hc = svc.health_check
                if hc is None:
                    continue
                if not 1 <= hc.port <= 65535:
                    problems.append(f"load_balancer: service {i} health check has invalid port {hc.port}")
                if not 3 <= hc.interval <= 3600:
                    problems.append(f"load_balancer: service {i} health check interval must be between 3 and 3600 seconds")
                if not 1 <= hc.timeout <= 3600:
                    problems.append(f"load_balancer: service {i} health check timeout must be between 1 and 3600 seconds")
                if not 1 <= hc.retries <= 10:
                    problems.append(f"load_balancer: service {i} health check retries must be between 1 and 10")
            if lb.use_private_ip and not private.enabled:
                problems.append("load_balancer: use_private_ip requires private_network to be enabled")
            if lb.attach_to_network and not private.enabled:
                problems.append("load_balancer: attach_to_network requires private_network to be enabled")

        if self.dns_zone.enabled:
            if not self.domain:
                problems.append("domain is required when dns_zone.enabled is true")
            if self.dns_zone.ttl < 60:
                problems.append("dns_zone.ttl must be at least 60 seconds")

        if self.ssl_certificate.enabled:
            if not self.dns_zone.enabled:
                problems.append("dns_zone.enabled must be true when ssl_certificate.enabled is true")
            if not self.domain:
                problems.append("domain is required when ssl_certificate.enabled is true")
            if not lb.enabled:
                problems.append("load_balancer.enabled must be true when ssl_certificate.enabled is true")

        return problems

    # ------------------ derived views ------------------

    @property
    def private_network_enabled(self) -> bool:
        return self.networking.private_network.enabled

    @property
    def nat_gateway_enabled(self) -> bool:
        private = self.networking.private_network
        return private.enabled and private.nat_gateway is not None and private.nat_gateway.enabled

    @property
    def use_local_firewall(self) -> bool:
        return self.networking.public_network.use_local_firewall

    def static_pools(self) -> List[WorkerPool]:
        return [p for p in self.worker_node_pools if not p.autoscaling_enabled]

    def autoscaling_pools(self) -> List[WorkerPool]:
        return [p for p in self.worker_node_pools if p.autoscaling_enabled]

    def warnings(self) -> List[str]:
        """Non-fatal findings worth telling the operator about."""
        out: List[str] = []
        count = self.masters_pool.instance_count
        if count > 1 and count % 2 == 0:
            out.append(
                f"master instance_count is {count} (even). For HA, odd numbers "
                "(3, 5, 7) are recommended for etcd quorum"
            )
        if not self.worker_node_pools:
            out.append("no worker pools configured, cluster will only have master nodes")
        if "0.0.0.0/0" in self.networking.allowed_networks.api:
            out.append("Kubernetes API is open to the internet (0.0.0.0/0). Consider restricting access.")
        pool_names = {p.name for p in self.worker_node_pools}
        for target in self.load_balancer.target_pools:
            if target not in pool_names:
                out.append(f"load_balancer: target_pool '{target}' not found in worker_node_pools")
        if self.dns_zone.enabled and not self.load_balancer.enabled:
            out.append("dns_zone is enabled but load_balancer is not enabled. DNS records will not be created.")
        if self.ssl_certificate.enabled and not self.load_balancer.has_https_service:
            out.append(
                "ssl_certificate is enabled but no HTTPS service found in load_balancer.services; "
                "the certificate step will fail"
            )
        return out
