# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/k3forge/cluster/network_resources.py

from __future__ import annotations

import ipaddress
import logging
import time
from typing import List, Optional

from k3forge.cloud.models import (
    Certificate,
    Firewall,
    FirewallRule,
    HealthCheck,
    LoadBalancer,
    LoadBalancerService,
    LoadBalancerTarget,
    Network,
    Zone,
)
from k3forge.cloud.provisioner import ResourceProvisioner
from k3forge.config.models import ClusterSpec
from k3forge.errors import ConfigError, ReadinessTimeoutError
from k3forge.utils.retry import RetryError, retry

from .helpers import (
    API_PORT,
    MANAGED_BY,
    api_load_balancer_name,
    base_labels,
    cluster_selector,
    firewall_name,
    global_load_balancer_name,
    resolve_private_targeting,
)

log = logging.getLogger("k3forge")

ATTACH_VERIFY_ATTEMPTS = 5
ATTACH_VERIFY_DELAY = 2.0
STABILIZE_DELAY = 5.0

FALLBACK_CIDR = "127.0.0.1/32"


class _NotAttachedYet(Exception):
    pass


def safe_cidr(cidr: str) -> str:
    """Normalised CIDR, or a loopback-only range when *cidr* does not parse."""
    try:
        return str(ipaddress.ip_network(cidr, strict=False))
    except ValueError:
        log.warning("invalid CIDR %r in allowed networks, using %s instead", cidr, FALLBACK_CIDR)
        return FALLBACK_CIDR


class NetworkResourceManager:
    """Creates the cluster's firewall, load balancers, DNS zone and certificate."""

    def __init__(self, spec: ClusterSpec, provisioner: ResourceProvisioner):
        self.spec = spec
        self.provisioner = provisioner

    # ------------------------------------------------------------------
    # Load balancer plumbing
    # ------------------------------------------------------------------
    def _wait_for_attachment(self, lb: LoadBalancer) -> LoadBalancer:
        client = self.provisioner.client

        @retry(
            retries=ATTACH_VERIFY_ATTEMPTS,
            delay=ATTACH_VERIFY_DELAY,
            backoff=2.0,
            retry_on=(_NotAttachedYet,),
            on_retry=lambda attempt, _: log.info(
                "Network attachment of %s in progress (attempt %d/%d)", lb.name, attempt, ATTACH_VERIFY_ATTEMPTS
            ),
        )
        def _refetch() -> LoadBalancer:
            current = client.get_load_balancer(lb.name)
            if current is None:
                raise ReadinessTimeoutError(f"load balancer {lb.name} not found after creation")
            if not current.private_net:
                raise _NotAttachedYet(lb.name)
            return current

        try:
            return _refetch()
        except RetryError as e:
            raise ReadinessTimeoutError(
                f"load balancer {lb.name} network attachment not complete "
                f"after {ATTACH_VERIFY_ATTEMPTS} attempts"
            ) from e

    def _attach_and_stabilize(self, lb: LoadBalancer, network: Optional[Network], attach: bool) -> LoadBalancer:
        if attach and network is not None:
            self.provisioner.attach_load_balancer(lb, network)
            lb = self._wait_for_attachment(lb)
            log.info("Load balancer %s attached to %s (%s)", lb.name, network.name, lb.private_ip)
        log.info("Waiting for load balancer %s to stabilize before adding targets", lb.name)
        time.sleep(STABILIZE_DELAY)
        return lb

    # ------------------------------------------------------------------
    # API load balancer
    # ------------------------------------------------------------------
    def create_api_load_balancer(self, location: str, network: Optional[Network]) -> Optional[LoadBalancer]:
        if not self.spec.create_load_balancer_for_the_kubernetes_api:
            return None

        cluster = self.spec.cluster_name
        attach = self.spec.private_network_enabled and network is not None
        service = LoadBalancerService(
            protocol="tcp",
            listen_port=API_PORT,
            destination_port=API_PORT,
            health_check=HealthCheck(protocol="tcp", port=API_PORT, interval=15, timeout=10, retries=3),
        )
        lb = self.provisioner.ensure_load_balancer(
            api_load_balancer_name(cluster),
            "lb11",
            location,
            "round_robin",
            [service],
            {"cluster": cluster, "role": "api-lb", "managed": MANAGED_BY},
        )
        lb = self._attach_and_stabilize(lb, network, attach)
        self.provisioner.add_load_balancer_target(
            lb,
            LoadBalancerTarget(label_selector=f"role=master,cluster={cluster}", use_private_ip=attach),
        )
        return lb

    # ------------------------------------------------------------------
    # Firewall
    # ------------------------------------------------------------------
    def firewall_rules(self) -> List[FirewallRule]:
        net = self.spec.networking
        rules = [
            FirewallRule(
                direction="in",
                protocol="tcp",
                source_ips=(safe_cidr(cidr),),
                port=str(net.ssh.port),
                description="SSH access",
            )
            for cidr in net.allowed_networks.ssh
        ]
        rules += [
            FirewallRule(
                direction="in",
                protocol="tcp",
                source_ips=(safe_cidr(cidr),),
                port=str(API_PORT),
                description="Kubernetes API access",
            )
            for cidr in net.allowed_networks.api
        ]
        if net.private_network.enabled:
            subnet = str(ipaddress.ip_network(net.private_network.subnet, strict=False))
            rules += [
                FirewallRule("in", "tcp", (subnet,), "1-65535", "Allow all TCP within cluster network"),
                FirewallRule("in", "udp", (subnet,), "1-65535", "Allow all UDP within cluster network"),
                FirewallRule("in", "icmp", (subnet,), None, "Allow ICMP within cluster network"),
            ]
        return rules

    def create_firewall(self, network: Optional[Network] = None) -> Optional[Firewall]:
        if not self.spec.private_network_enabled and self.spec.use_local_firewall:
            log.info("Local firewall mode: skipping cloud firewall")
            return None
        cluster = self.spec.cluster_name
        return self.provisioner.ensure_firewall(
            firewall_name(cluster),
            self.firewall_rules(),
            cluster_selector(cluster),
            base_labels(cluster),
        )

    # ------------------------------------------------------------------
    # Global load balancer
    # ------------------------------------------------------------------
    def create_global_load_balancer(
        self,
        network: Optional[Network],
        location: str,
        certificate: Optional[Certificate] = None,
    ) -> Optional[LoadBalancer]:
        cfg = self.spec.load_balancer
        if not cfg.enabled:
            return None

        cluster = self.spec.cluster_name
        services = []
        for svc in cfg.services:
            cert_ids = ()
            if svc.protocol == "https" and certificate is not None:
                cert_ids = (certificate.id,)
                log.info("Attaching certificate %s to HTTPS service on port %d", certificate.name, svc.listen_port)
            hc = None
            if svc.health_check:
                h = svc.health_check
                hc = HealthCheck(protocol=h.protocol, port=h.port, interval=h.interval, timeout=h.timeout, retries=h.retries)
            services.append(
                LoadBalancerService(
                    protocol=svc.protocol,
                    listen_port=svc.listen_port,
                    destination_port=svc.destination_port,
                    proxyprotocol=svc.proxyprotocol,
                    health_check=hc,
                    certificate_ids=cert_ids,
                )
            )

        attach, use_private_ip = resolve_private_targeting(
            attach_requested=cfg.attach_to_network,
            private_network_enabled=self.spec.private_network_enabled,
            network_present=network is not None,
            use_private_ip=cfg.use_private_ip,
        )

        lb = self.provisioner.ensure_load_balancer(
            global_load_balancer_name(self.spec),
            cfg.type,
            cfg.location or location,
            cfg.algorithm,
            services,
            {"cluster": cluster, "role": "global-lb", "managed": MANAGED_BY},
        )
        lb = self._attach_and_stabilize(lb, network, attach)

        selectors = [f"pool={pool}" for pool in cfg.target_pools] or [f"role=worker,cluster={cluster}"]
        for selector in selectors:
            self.provisioner.add_load_balancer_target(
                lb, LoadBalancerTarget(label_selector=selector, use_private_ip=use_private_ip)
            )
        return lb

    # ------------------------------------------------------------------
    # DNS / certificate
    # ------------------------------------------------------------------
    def create_dns_zone(self) -> Optional[Zone]:
        cfg = self.spec.dns_zone
        if not cfg.enabled or not self.spec.domain:
            return None
        zone = self.provisioner.ensure_zone(
            cfg.name or self.spec.domain, cfg.ttl, base_labels(self.spec.cluster_name)
        )
        if zone.nameservers:
            log.info("DNS zone %s nameservers: %s", zone.name, ", ".join(zone.nameservers))
            log.info("Point your registrar's NS records for %s at these nameservers", zone.name)
        return zone

    def create_certificate(self) -> Optional[Certificate]:
        cfg = self.spec.ssl_certificate
        if not cfg.enabled:
            return None

        problems = []
        if not self.spec.dns_zone.enabled:
            problems.append("dns_zone must be enabled")
        if not self.spec.domain:
            problems.append("domain must be set")
        if not self.spec.load_balancer.enabled:
            problems.append("load_balancer must be enabled")
        elif not self.spec.load_balancer.has_https_service:
            problems.append("load_balancer needs an https service")
        if problems:
            raise ConfigError("ssl_certificate cannot be created", problems)

        domain = cfg.domain or self.spec.domain
        return self.provisioner.ensure_managed_certificate(
            cfg.name or domain,
            [domain, f"*.{domain}"],
            base_labels(self.spec.cluster_name),
        )
