# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/k3forge/cluster/helpers.py

from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from k3forge.cloud.models import LoadBalancer, Server
from k3forge.cloud.provisioner import ResourceProvisioner
from k3forge.config.models import ClusterSpec, WorkerPool
from k3forge.errors import K3ForgeError
from k3forge.utils.parallel import run_parallel

log = logging.getLogger("k3forge")

MANAGED_BY = "k3forge"
NODE_GROUP_LABEL = "hcloud/node-group"
API_PORT = 6443


# ---------------------------------------------------------------------
# Names
# ---------------------------------------------------------------------
def ssh_key_name(cluster: str) -> str:
    return f"{cluster}-ssh-key"


def nat_gateway_name(cluster: str) -> str:
    return f"{cluster}-nat-gateway"


def master_name(cluster: str, index: int) -> str:
    return f"{cluster}-master-{index + 1}"


def worker_name(cluster: str, pool: WorkerPool, index: int) -> str:
    # always cluster-scoped; the prefix setting only affects autoscaler node groups
    return f"{cluster}-worker-{pool.name}-{index + 1}"


def firewall_name(cluster: str) -> str:
    return f"{cluster}-firewall"


def api_load_balancer_name(cluster: str) -> str:
    return f"{cluster}-api-lb"


def global_load_balancer_name(spec: ClusterSpec) -> str:
    return spec.load_balancer.name or f"{spec.cluster_name}-global-lb"


# ---------------------------------------------------------------------
# Labels / selectors
# ---------------------------------------------------------------------
def cluster_selector(cluster: str) -> str:
    return f"cluster={cluster}"


def node_group_selector(node_group: str) -> str:
    return f"{NODE_GROUP_LABEL}={node_group}"


def base_labels(cluster: str) -> Dict[str, str]:
    return {"cluster": cluster, "managed": MANAGED_BY}


def master_labels(cluster: str) -> Dict[str, str]:
    return {"cluster": cluster, "role": "master", "managed": MANAGED_BY}


def worker_labels(cluster: str, pool: WorkerPool) -> Dict[str, str]:
    return {
        "cluster": cluster,
        "role": "worker",
        "pool": pool.name,
        "managed": MANAGED_BY,
    }


# ---------------------------------------------------------------------
# Addresses
# ---------------------------------------------------------------------
def cluster_ip(server: Server, spec: ClusterSpec) -> str:
    """Address other nodes use to reach *server* (private when the cluster has a network)."""
    if spec.private_network_enabled and server.private_ip:
        return server.private_ip
    if server.public_ipv4:
        return server.public_ipv4
    raise K3ForgeError(
        f"server {server.name} has no accessible IP address "
        "(private networking disabled or unavailable, and no public IPv4)"
    )


def ssh_ip(server: Server) -> str:
    """Address the operator's machine dials; private ones are reached through the bastion."""
    address = server.address
    if not address:
        raise K3ForgeError(f"server {server.name} has no accessible IP address for SSH")
    return address


def build_tls_sans(
    spec: ClusterSpec,
    masters: Sequence[Server],
    first_master: Server,
    api_load_balancer: Optional[LoadBalancer] = None,
) -> str:
    """
    Every name the API server certificate must be valid for, as k3s flags.

    The set is de-duplicated and sorted so that re-running the install on
    the same servers produces the same command.
    """
    sans = {cluster_ip(first_master, spec), "127.0.0.1"}
    if api_load_balancer and api_load_balancer.public_ipv4:
        sans.add(api_load_balancer.public_ipv4)
    if spec.api_server_hostname:
        sans.add(spec.api_server_hostname)
    for master in masters:
        if master.private_ip:
            sans.add(master.private_ip)
        if master.public_ipv4:
            sans.add(master.public_ipv4)
    return " ".join(sorted(f"--tls-san={san}" for san in sans))


# ---------------------------------------------------------------------
# Load balancer targeting
# ---------------------------------------------------------------------
def resolve_private_targeting(
    *,
    attach_requested: bool,
    private_network_enabled: bool,
    network_present: bool,
    use_private_ip: Optional[bool] = None,
) -> Tuple[bool, bool]:
    """
    Returns (attach, use_private_ip).

    A load balancer can only address targets by private IP when it sits on
    the private network, so use_private_ip never ends up true without attach.
    An unset use_private_ip follows attach.
    """
    attach = attach_requested and private_network_enabled and network_present
    if use_private_ip is None:
        return attach, attach
    return attach, use_private_ip and attach


# ---------------------------------------------------------------------
# Discovery
# ---------------------------------------------------------------------
def merge_servers(*groups: Iterable[Server]) -> List[Server]:
    """Concatenate server lists, keeping the first occurrence of each id."""
    seen = set()
    merged: List[Server] = []
    for group in groups:
        for server in group:
            if server.id in seen:
                continue
            seen.add(server.id)
            merged.append(server)
    return merged


def discover_cluster_servers(provisioner: ResourceProvisioner, spec: ClusterSpec) -> List[Server]:
    """
    Live lookup of every server that belongs to the cluster.

    Autoscaled workers are created by the cluster autoscaler and carry only
    the node-group label, so each autoscaling pool is queried separately.
    """
    selectors = [cluster_selector(spec.cluster_name)]
    selectors += [
        node_group_selector(pool.node_group_name(spec.cluster_name))
        for pool in spec.autoscaling_pools()
    ]
    outcome = run_parallel(selectors, provisioner.list_servers, label=lambda s: f"list {s}")
    outcome.raise_for_errors("server discovery failed")
    servers = [
        s
        for s in merge_servers(*(r or [] for r in outcome.results))
        if s.labels.get("cluster", spec.cluster_name) == spec.cluster_name
    ]
    log.debug("discovered %d server(s) for cluster %s", len(servers), spec.cluster_name)
    return servers


def split_by_role(servers: Iterable[Server]) -> Tuple[List[Server], List[Server]]:
    masters: List[Server] = []
    workers: List[Server] = []
    for server in servers:
        role = server.labels.get("role")
        if role == "master":
            masters.append(server)
        elif role == "worker":
            workers.append(server)
        elif role is None and NODE_GROUP_LABEL in server.labels:
            # created by the cluster autoscaler
            workers.append(server)
    masters.sort(key=lambda s: s.name)
    return masters, workers


def attach_nat_bastion(provisioner: ResourceProvisioner, executor, spec: ClusterSpec) -> Optional[Server]:
    """Routes SSH through the cluster's NAT gateway when one exists."""
    gateway = provisioner.client.get_server(nat_gateway_name(spec.cluster_name))
    if gateway is None or not gateway.public_ipv4:
        return None
    executor.set_bastion(gateway.public_ipv4, spec.networking.ssh.port)
    log.info("Using NAT gateway %s (%s) as SSH bastion", gateway.name, gateway.public_ipv4)
    return gateway
