# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/k3forge/cluster/create.py

from __future__ import annotations

import logging
import os
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional, Tuple

from k3forge.addons.installer import AddonInstaller
from k3forge.cloud.models import LoadBalancer, Network, Route, Server, ServerSpec, SSHKey
from k3forge.cloud.provisioner import ResourceProvisioner
from k3forge.cloudinit.generator import generate_nat_gateway_cloud_init, generate_node_cloud_init
from k3forge.config.models import ClusterSpec, WorkerPool
from k3forge.errors import ConfigError, K3ForgeError
from k3forge.k8s.kubectl import KubectlClient
from k3forge.observers.events import (
    NODE_CLOUD_INIT_COMPLETE,
    NODE_K3S_INSTALLED,
    NODE_REQUESTED,
    NODE_RUNNING,
    NODE_SSH_REACHABLE,
)
from k3forge.utils.parallel import run_parallel
from k3forge.utils.ssh import RemoteExecutor
from k3forge.utils.waiters import attempts_for

from . import k3s
from .flannel import DETECT_PRIVATE_IFACE_CMD, flannel_backend_flags, should_configure_flannel_interface
from .helpers import (
    API_PORT,
    MANAGED_BY,
    base_labels,
    build_tls_sans,
    cluster_ip,
    master_labels,
    master_name,
    nat_gateway_name,
    ssh_ip,
    ssh_key_name,
    worker_labels,
    worker_name,
)
from .network_resources import NetworkResourceManager
from .pipeline import Pipeline

log = logging.getLogger("k3forge")

SSH_READY_ATTEMPTS = 30
SSH_READY_DELAY = 5.0
NAT_CONNECTIVITY_TIMEOUT = 120.0
NAT_CONNECTIVITY_INTERVAL = 3.0
SERVICE_ACTIVE_TIMEOUT = 120.0
SERVICE_ACTIVE_INTERVAL = 2.0
KUBECONFIG_TIMEOUT = 60.0
KUBECONFIG_INTERVAL = 2.0
K3S_INSTALL_TIMEOUT = 600.0

LOCAL_API_URL = f"https://127.0.0.1:{API_PORT}"


@dataclass
class CreatedCluster:
    masters: List[Server]
    workers: List[Server]
    kubeconfig_path: Path
    api_load_balancer: Optional[LoadBalancer] = None
    global_load_balancer: Optional[LoadBalancer] = None
    nat_gateway: Optional[Server] = None
    warnings: List[str] = field(default_factory=list)


class Creator(Pipeline):
    """
    Builds a cluster from scratch, or finishes one a previous run left half done.

    Steps run strictly in order. Inside a step, per-node work fans out on a
    thread pool and joins before the next step starts; any node failure fails
    the step with one error per node.
    """

    name = "create"

    def __init__(
        self,
        spec: ClusterSpec,
        provisioner: ResourceProvisioner,
        executor: RemoteExecutor,
        *,
        installer_factory: Optional[Callable[[], AddonInstaller]] = None,
        **kwargs,
    ):
        super().__init__(spec, **kwargs)
        self.provisioner = provisioner
        self.executor = executor
        self.network_resources = NetworkResourceManager(spec, provisioner)
        self._installer_factory = installer_factory or self._default_installer

        self.token = k3s.generate_token()
        self.ssh_key: Optional[SSHKey] = None
        self.network: Optional[Network] = None
        self.nat_gateway: Optional[Server] = None
        self.masters: List[Server] = []
        self.workers: List[Server] = []
        self.api_load_balancer: Optional[LoadBalancer] = None
        self.global_load_balancer: Optional[LoadBalancer] = None

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------
    def run(self) -> CreatedCluster:
        spec = self.spec
        log.info("Creating cluster %s (k3s %s)", spec.cluster_name, spec.k3s_version)

        with self.running():
            with self.step("ssh key"):
                self.ssh_key = self.create_ssh_key()
            with self.step("private network"):
                self.network = self.create_network()
            with self.step("nat gateway"):
                self.nat_gateway = self.create_nat_gateway()
            with self.step("masters"):
                created_masters = self.create_masters()
            with self.step("firewall"):
                self.network_resources.create_firewall(self.network)
            with self.step("master readiness"):
                self.wait_for_nodes(created_masters)
            with self.step("api load balancer"):
                self.api_load_balancer = self.network_resources.create_api_load_balancer(
                    self.primary_location, self.network
                )
            with self.step("k3s masters"):
                self.install_masters()
            with self.step("workers"):
                self.create_workers()
            with self.step("dns zone, certificate and global load balancer"):
                self.network_resources.create_dns_zone()
                certificate = self.network_resources.create_certificate()
                self.global_load_balancer = self.network_resources.create_global_load_balancer(
                    self.network, self.primary_location, certificate
                )
            with self.step("kubeconfig"):
                kubeconfig = self.write_kubeconfig()
            with self.step("addons"):
                self._installer_factory().install_all(
                    self.first_master, self.masters, spec.autoscaling_pools(), self.token
                )

        log.info("Cluster %s is ready. kubeconfig: %s", spec.cluster_name, kubeconfig)
        return CreatedCluster(
            masters=list(self.masters),
            workers=list(self.workers),
            kubeconfig_path=kubeconfig,
            api_load_balancer=self.api_load_balancer,
            global_load_balancer=self.global_load_balancer,
            nat_gateway=self.nat_gateway,
            warnings=spec.warnings(),
        )

    # ------------------------------------------------------------------
    # Convenience
    # ------------------------------------------------------------------
    @property
    def primary_location(self) -> str:
        return self.spec.masters_pool.locations[0]

    @property
    def first_master(self) -> Server:
        if not self.masters:
            raise K3ForgeError("no master servers available")
        return self.masters[0]

    @property
    def ssh_port(self) -> int:
        return self.spec.networking.ssh.port

    @property
    def use_agent(self) -> bool:
        return self.spec.networking.ssh.use_agent

    def _default_installer(self) -> AddonInstaller:
        return AddonInstaller(self.spec, KubectlClient(self.spec.kubeconfig_path), self.executor)

    def _public_ips(self) -> Tuple[bool, bool]:
        public = self.spec.networking.public_network
        if self.spec.nat_gateway_enabled:
            return False, False
        return public.ipv4, public.ipv6

    def _network_ids(self) -> Tuple[int, ...]:
        return (self.network.id,) if self.network else ()

    # ------------------------------------------------------------------
    # Steps 1-3
    # ------------------------------------------------------------------
    def create_ssh_key(self) -> SSHKey:
        path = self.spec.networking.ssh.expanded_public_key_path
        try:
            public_key = path.read_text().strip()
        except OSError as e:
            raise ConfigError(f"cannot read SSH public key {path}: {e}") from e
        name = ssh_key_name(self.spec.cluster_name)
        return self.provisioner.ensure_ssh_key(name, public_key, base_labels(self.spec.cluster_name))

    def create_network(self) -> Optional[Network]:
        private = self.spec.networking.private_network
        if not private.enabled:
            log.info("Private network disabled, nodes will talk over public IPs")
            return None
        return self.provisioner.ensure_network(
            self.spec.cluster_name, private.subnet, private.network_zone, base_labels(self.spec.cluster_name)
        )

    def create_nat_gateway(self) -> Optional[Server]:
        if not self.spec.nat_gateway_enabled or self.network is None:
            return None

        cluster = self.spec.cluster_name
        nat = self.spec.networking.private_network.nat_gateway
        subnet = self.spec.networking.private_network.subnet
        server, _ = self.provisioner.ensure_server(
            ServerSpec(
                name=nat_gateway_name(cluster),
                server_type=nat.instance_type,
                image=self.spec.image,
                location=nat.location or self.primary_location,
                ssh_key_ids=(self.ssh_key.id,),
                network_ids=self._network_ids(),
                labels={"cluster": cluster, "role": "nat-gateway", "managed": MANAGED_BY},
                user_data=generate_nat_gateway_cloud_init(subnet),
                enable_ipv4=True,
                enable_ipv6=False,
            )
        )
        server = self.provisioner.wait_for_server_status(server, "running")
        if not server.public_ipv4 or not server.private_ip:
            raise K3ForgeError(f"NAT gateway {server.name} is missing its public or private address")

        self.executor.wait_until(
            server.public_ipv4, self.ssh_port, "echo ready", "ready",
            max_attempts=SSH_READY_ATTEMPTS, delay=SSH_READY_DELAY, use_agent=self.use_agent,
        )
        self.provisioner.ensure_route(self.network, Route(destination="0.0.0.0/0", gateway=server.private_ip))
        self.executor.set_bastion(server.public_ipv4, self.ssh_port)
        log.info("NAT gateway %s (%s) will be used as SSH bastion", server.name, server.public_ipv4)
        return server

    # ------------------------------------------------------------------
    # Steps 4 and 6
    # ------------------------------------------------------------------
    def _node_spec(self, name: str, server_type: str, image: Optional[str], location: str,
                   labels, pool: Optional[WorkerPool]) -> ServerSpec:
        ipv4, ipv6 = self._public_ips()
        return ServerSpec(
            name=name,
            server_type=server_type,
            image=image or self.spec.image,
            location=location,
            ssh_key_ids=(self.ssh_key.id,),
            network_ids=self._network_ids(),
            labels=labels,
            user_data=generate_node_cloud_init(self.spec, pool if pool is not None else self.spec.masters_pool),
            enable_ipv4=ipv4,
            enable_ipv6=ipv6,
        )

    def create_masters(self) -> List[Server]:
        """Creates the masters in parallel; returns the ones this run created."""
        cluster = self.spec.cluster_name
        pool = self.spec.masters_pool
        indices = list(range(pool.instance_count))

        def _create(i: int) -> Tuple[Server, bool]:
            name = master_name(cluster, i)
            self.node_state(name, NODE_REQUESTED)
            location = pool.locations[i % len(pool.locations)]
            return self.provisioner.ensure_server(
                self._node_spec(name, pool.instance_type, pool.image, location, master_labels(cluster), None)
            )

        outcome = run_parallel(indices, _create, label=lambda i: master_name(cluster, i))
        outcome.raise_for_errors("failed to create master servers")

        self.masters = [server for server, _ in outcome.results]
        return [server for server, created in outcome.results if created]

    def _make_ready(self, server: Server) -> Server:
        server = self.provisioner.wait_for_server_status(server, "running")
        self.node_state(server.name, NODE_RUNNING)
        host = ssh_ip(server)
        self.executor.wait_until(
            host, self.ssh_port, "echo ready", "ready",
            max_attempts=SSH_READY_ATTEMPTS, delay=SSH_READY_DELAY, use_agent=self.use_agent,
        )
        self.node_state(server.name, NODE_SSH_REACHABLE)
        self.executor.wait_for_boot(host, self.ssh_port, use_agent=self.use_agent)
        self.node_state(server.name, NODE_CLOUD_INIT_COMPLETE)
        return server

    def wait_for_nodes(self, servers: List[Server]) -> List[Server]:
        """Waits for freshly created servers and swaps in their re-fetched state."""
        if not servers:
            log.info("No new servers to wait for")
            return []
        outcome = run_parallel(servers, self._make_ready, label=lambda s: s.name)
        outcome.raise_for_errors("servers did not become ready")

        ready = {server.id: server for server in outcome.results}
        self.masters = [ready.get(s.id, s) for s in self.masters]
        self.workers = [ready.get(s.id, s) for s in self.workers]
        return list(ready.values())

    # ------------------------------------------------------------------
    # Step 8
    # ------------------------------------------------------------------
    def _service_active(self, host: str, service: str) -> bool:
        output = self.executor.run(host, self.ssh_port, k3s.service_active_cmd(service), use_agent=self.use_agent)
        return output.strip() == "active"

    def _wait_service(self, host: str, service: str) -> None:
        self.executor.wait_until(
            host, self.ssh_port, k3s.service_active_cmd(service), "active",
            max_attempts=attempts_for(SERVICE_ACTIVE_TIMEOUT, SERVICE_ACTIVE_INTERVAL),
            delay=SERVICE_ACTIVE_INTERVAL, use_agent=self.use_agent,
        )

    def _flannel_iface_flag(self, host: str) -> Optional[str]:
        if not should_configure_flannel_interface(self.spec):
            return None
        iface = self.executor.run(host, self.ssh_port, DETECT_PRIVATE_IFACE_CMD, use_agent=self.use_agent).strip()
        if not iface:
            raise K3ForgeError(f"[{host}] could not detect the private network interface")
        log.debug("[%s] private interface: %s", host, iface)
        return f"--flannel-iface={iface}"

    def _check_nat_connectivity(self, host: str) -> None:
        if not self.spec.nat_gateway_enabled:
            return
        self.executor.wait_until(
            host, self.ssh_port, k3s.connectivity_probe(), "connected",
            max_attempts=attempts_for(NAT_CONNECTIVITY_TIMEOUT, NAT_CONNECTIVITY_INTERVAL),
            delay=NAT_CONNECTIVITY_INTERVAL, use_agent=self.use_agent,
        )

    def _server_args(self, host: str, tls_sans: str, *extra: str) -> str:
        return k3s.join_args(
            *extra,
            k3s.addon_flags(self.spec),
            k3s.server_flags(self.spec),
            flannel_backend_flags(self.spec, self.spec.k3s_version),
            tls_sans,
            self._flannel_iface_flag(host),
        )

    def _install_master(self, server: Server, kind: str, tls_sans: str, *extra: str) -> None:
        host = ssh_ip(server)
        if self._service_active(host, "k3s"):
            log.info("[%s] k3s already running, skipping install", server.name)
            self.node_state(server.name, NODE_K3S_INSTALLED)
            return

        self._check_nat_connectivity(host)
        command = k3s.render_install_command(
            kind,
            k3s_version=self.spec.k3s_version,
            token=self.token,
            args=self._server_args(host, tls_sans, *extra),
        )
        log.info("[%s] installing k3s server", server.name)
        self.executor.run(host, self.ssh_port, command, use_agent=self.use_agent, timeout=K3S_INSTALL_TIMEOUT)
        self._wait_service(host, "k3s")
        self.node_state(server.name, NODE_K3S_INSTALLED)

    def install_masters(self) -> None:
        first = self.first_master
        tls_sans = build_tls_sans(self.spec, self.masters, first, self.api_load_balancer)

        self._install_master(first, "first_master", tls_sans, "--cluster-init")
        self.executor.wait_until(
            ssh_ip(first), self.ssh_port, k3s.KUBECONFIG_CHECK_CMD, "exists",
            max_attempts=attempts_for(KUBECONFIG_TIMEOUT, KUBECONFIG_INTERVAL),
            delay=KUBECONFIG_INTERVAL, use_agent=self.use_agent,
        )

        others = self.masters[1:]
        if not others:
            return
        server_url = f"--server https://{cluster_ip(first, self.spec)}:{API_PORT}"
        outcome = run_parallel(
            others,
            lambda m: self._install_master(m, "additional_master", tls_sans, server_url),
            label=lambda m: m.name,
        )
        outcome.raise_for_errors("k3s install failed on additional masters")

    # ------------------------------------------------------------------
    # Step 9
    # ------------------------------------------------------------------
    def create_workers(self) -> None:
        cluster = self.spec.cluster_name
        slots = [
            (pool, i)
            for pool in self.spec.static_pools()
            for i in range(pool.instance_count)
        ]
        if not slots:
            log.info("No static worker pools")
            return

        created: List[Server] = []
        lock = threading.Lock()

        def _create(slot: Tuple[WorkerPool, int]) -> None:
            pool, i = slot
            name = worker_name(cluster, pool, i)
            self.node_state(name, NODE_REQUESTED)
            server, is_new = self.provisioner.ensure_server(
                self._node_spec(name, pool.instance_type, pool.image, pool.location, worker_labels(cluster, pool), pool)
            )
            with lock:
                self.workers.append(server)
                if is_new:
                    created.append(server)

        outcome = run_parallel(slots, _create, label=lambda s: worker_name(cluster, s[0], s[1]))
        outcome.raise_for_errors("failed to create worker servers")

        self.workers.sort(key=lambda s: s.name)
        self.wait_for_nodes(created)

        pools = {pool.name: pool for pool in self.spec.static_pools()}
        k3s_url = f"https://{cluster_ip(self.first_master, self.spec)}:{API_PORT}"
        outcome = run_parallel(
            self.workers,
            lambda w: self._install_worker(w, pools[w.labels["pool"]], k3s_url),
            label=lambda w: w.name,
        )
        outcome.raise_for_errors("k3s agent install failed on workers")

    def _install_worker(self, server: Server, pool: WorkerPool, k3s_url: str) -> None:
        host = ssh_ip(server)
        if self._service_active(host, "k3s-agent"):
            log.info("[%s] k3s agent already running, skipping install", server.name)
            self.node_state(server.name, NODE_K3S_INSTALLED)
            return

        self._check_nat_connectivity(host)
        args = k3s.join_args(
            " ".join(k3s.node_flags(pool.labels, pool.taints)),
            " ".join(k3s.kubelet_flags(self.spec)),
            self._flannel_iface_flag(host),
        )
        command = k3s.render_install_command(
            "worker", k3s_version=self.spec.k3s_version, token=self.token, k3s_url=k3s_url, args=args
        )
        log.info("[%s] joining k3s agent to %s", server.name, k3s_url)
        self.executor.run(host, self.ssh_port, command, use_agent=self.use_agent, timeout=K3S_INSTALL_TIMEOUT)
        self._wait_service(host, "k3s-agent")
        self.node_state(server.name, NODE_K3S_INSTALLED)

    # ------------------------------------------------------------------
    # Step 11
    # ------------------------------------------------------------------
    def api_endpoint(self) -> str:
        """Address written into the kubeconfig, best reachable first."""
        if self.api_load_balancer and self.api_load_balancer.public_ipv4:
            return self.api_load_balancer.public_ipv4
        first = self.first_master
        if first.public_ipv4:
            return first.public_ipv4
        if first.private_ip:
            log.warning(
                "kubeconfig points at private IP %s; the API is only reachable over VPN or the bastion",
                first.private_ip,
            )
            return first.private_ip
        raise K3ForgeError(f"no reachable address for the Kubernetes API on {first.name}")

    def write_kubeconfig(self) -> Path:
        first = self.first_master
        raw = self.executor.run(ssh_ip(first), self.ssh_port, k3s.KUBECONFIG_READ_CMD, use_agent=self.use_agent)
        content = raw.replace(LOCAL_API_URL, f"https://{self.api_endpoint()}:{API_PORT}")

        path = Path(self.spec.kubeconfig_path).expanduser()
        path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w") as fh:
            fh.write(content)
        os.chmod(path, 0o600)
        log.info("Wrote kubeconfig to %s", path)
        return path
