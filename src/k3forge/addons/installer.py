# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/k3forge/addons/installer.py

from __future__ import annotations

import base64
import json
import logging
from typing import Dict, List, Sequence

from k3forge.cloud.models import Server
from k3forge.cloudinit.generator import generate_node_cloud_init
from k3forge.cluster import k3s
from k3forge.cluster.flannel import DETECT_PRIVATE_IFACE_CMD, should_configure_flannel_interface
from k3forge.cluster.helpers import API_PORT, cluster_ip, firewall_name, ssh_ip, ssh_key_name
from k3forge.config.models import ClusterSpec, WorkerPool
from k3forge.k8s.kubectl import KubectlClient
from k3forge.utils.ssh import RemoteExecutor
from k3forge.utils.templates import render_template

log = logging.getLogger("k3forge")

CILIUM_CLI_INSTALL = (
    "command -v cilium >/dev/null 2>&1 || ("
    "CLI_VERSION=$(curl -s https://raw.githubusercontent.com/cilium/cilium-cli/main/stable.txt) && "
    "ARCH=$(uname -m | sed 's/x86_64/amd64/;s/aarch64/arm64/') && "
    "curl -sL --fail https://github.com/cilium/cilium-cli/releases/download/${CLI_VERSION}/cilium-linux-${ARCH}.tar.gz "
    "| tar xz -C /usr/local/bin)"
)


class AddonInstaller:
    """
    Installs the cluster addons once the API is reachable.

    Each addon is skipped when its main object already exists, so a re-run
    after a partial failure only installs what is missing.
    """

    def __init__(self, spec: ClusterSpec, kubectl: KubectlClient, executor: RemoteExecutor):
        self.spec = spec
        self.kubectl = kubectl
        self.executor = executor

    def install_all(
        self,
        first_master: Server,
        masters: Sequence[Server],
        autoscaling_pools: Sequence[WorkerPool],
        token: str,
    ) -> None:
        addons = self.spec.addons
        log.info("Installing cluster addons")

        cni = self.spec.networking.cni
        if cni.enabled and cni.mode == "cilium":
            self.install_cilium(first_master)

        needs_secret = (
            addons.csi_driver.enabled
            or addons.cloud_controller_manager.enabled
            or (addons.cluster_autoscaler.enabled and autoscaling_pools)
        )
        if needs_secret:
            self.ensure_hcloud_secret()
        if addons.csi_driver.enabled:
            self.install_csi_driver()
        if addons.cloud_controller_manager.enabled:
            self.install_cloud_controller_manager()
        if addons.system_upgrade_controller.enabled:
            self.install_system_upgrade_controller()
        if addons.cluster_autoscaler.enabled and autoscaling_pools:
            self.install_cluster_autoscaler(first_master, autoscaling_pools, token)

        log.info("All addons installed")

    # ------------------------------------------------------------------
    def install_cilium(self, first_master: Server) -> None:
        if self.kubectl.exists("daemonset", "cilium", "kube-system"):
            log.info("Cilium already installed, skipping")
            return
        cilium = self.spec.networking.cni.cilium
        sets = [
            f"ipam.operator.clusterPoolIPv4PodCIDRList={self.spec.networking.cluster_cidr}",
            "encryption.enabled=true",
            f"encryption.type={cilium.encryption_type}",
            f"routingMode={cilium.routing_mode}",
            f"tunnelProtocol={cilium.tunnel_protocol}",
            "kubeProxyReplacement=true",
            f"k8sServiceHost={cluster_ip(first_master, self.spec)}",
            f"k8sServicePort={API_PORT}",
        ]
        if cilium.hubble_enabled:
            sets += ["hubble.enabled=true", "hubble.relay.enabled=true"]
        command = " ".join(
            ["sudo", "cilium", "install", f"--version {cilium.version}"]
            + [f"--set {s}" for s in sets]
            + [f"--kubeconfig {k3s.KUBECONFIG_REMOTE_PATH}"]
        )
        host, port, agent = ssh_ip(first_master), self.spec.networking.ssh.port, self.spec.networking.ssh.use_agent
        self.executor.upload_and_run(
            host, port, f"#!/bin/bash\nset -e\n{CILIUM_CLI_INSTALL}\n",
            name="install-cilium-cli.sh", use_agent=agent, timeout=300,
        )
        self.executor.run_streaming(host, port, command, use_agent=agent, prefix="cilium", timeout=600)
        self.executor.run(
            host, port,
            f"sudo cilium status --wait --kubeconfig {k3s.KUBECONFIG_REMOTE_PATH}",
            use_agent=agent, timeout=600,
        )
        log.info("Cilium %s installed", cilium.version)

    def ensure_hcloud_secret(self) -> None:
        if self.kubectl.exists("secret", "hcloud", "kube-system"):
            log.info("hcloud secret already present, skipping")
            return
        network = self.spec.cluster_name if self.spec.private_network_enabled else ""
        self.kubectl.apply_manifest(
            render_template("addons/hcloud_secret.yaml.j2", token=self.spec.hetzner_token, network=network)
        )
        log.info("Created hcloud secret in kube-system")

    def install_csi_driver(self) -> None:
        if self.kubectl.exists("daemonset", "hcloud-csi-node", "kube-system"):
            log.info("Hetzner CSI driver already installed, skipping")
            return
        self.kubectl.apply_url(self.spec.addons.csi_driver.manifest_url)
        log.info("Hetzner CSI driver installed")

    def cloud_controller_manifest_url(self) -> str:
        url = self.spec.addons.cloud_controller_manager.manifest_url
        if not self.spec.private_network_enabled:
            # the -networks variant needs a private network to route pods through
            return url.replace("-networks", "")
        return url

    def install_cloud_controller_manager(self) -> None:
        if self.kubectl.exists("deployment", "hcloud-cloud-controller-manager", "kube-system"):
            log.info("Hetzner cloud controller manager already installed, skipping")
            return
        self.kubectl.apply_url(self.cloud_controller_manifest_url())
        log.info("Hetzner cloud controller manager installed")

    def install_system_upgrade_controller(self) -> None:
        if self.kubectl.exists("deployment", "system-upgrade-controller", "system-upgrade"):
            log.info("System upgrade controller already installed, skipping")
            return
        suc = self.spec.addons.system_upgrade_controller
        self.kubectl.apply_url(suc.crd_manifest_url)
        self.kubectl.apply_url(suc.manifest_url)
        log.info("System upgrade controller installed")

    def install_cluster_autoscaler(
        self, first_master: Server, pools: Sequence[WorkerPool], token: str
    ) -> None:
        if self.kubectl.exists("deployment", "cluster-autoscaler", "kube-system"):
            log.info("Cluster autoscaler already installed, skipping")
            return
        self.kubectl.apply_manifest(self.autoscaler_manifest(first_master, pools, token))
        log.info("Cluster autoscaler installed for %d pool(s)", len(pools))

    # ------------------------------------------------------------------
    def node_group_args(self, pools: Sequence[WorkerPool]) -> List[str]:
        return [
            "--nodes={}:{}:{}:{}:{}".format(
                pool.autoscaling.min_instances,
                pool.autoscaling.max_instances,
                pool.instance_type.upper(),
                pool.location.upper(),
                pool.node_group_name(self.spec.cluster_name),
            )
            for pool in pools
        ]

    def _join_command(self, pool: WorkerPool, master_ip: str, token: str) -> str:
        args = k3s.node_flags(pool.labels, pool.taints) + k3s.kubelet_flags(self.spec)
        if should_configure_flannel_interface(self.spec):
            args.append(f"--flannel-iface=$({DETECT_PRIVATE_IFACE_CMD})")
        return k3s.render_install_command(
            "worker",
            k3s_version=self.spec.k3s_version,
            token=token,
            k3s_url=f"https://{master_ip}:{API_PORT}",
            args=" ".join(args),
        )

    def cluster_config(self, first_master: Server, pools: Sequence[WorkerPool], token: str) -> Dict:
        master_ip = cluster_ip(first_master, self.spec)
        node_configs = {}
        for pool in pools:
            node_configs[pool.node_group_name(self.spec.cluster_name)] = {
                "cloudInit": generate_node_cloud_init(
                    self.spec, pool, extra_commands=[self._join_command(pool, master_ip, token)]
                ),
                "labels": {l.key: l.value for l in pool.labels},
                "taints": [{"key": t.key, "value": t.value, "effect": t.effect} for t in pool.taints],
            }
        image = self.spec.image
        return {"imagesForArch": {"arm64": image, "amd64": image}, "nodeConfigs": node_configs}

    def autoscaler_manifest(self, first_master: Server, pools: Sequence[WorkerPool], token: str) -> str:
        ca = self.spec.addons.cluster_autoscaler
        public = self.spec.networking.public_network
        nat = self.spec.nat_gateway_enabled
        config_json = json.dumps(self.cluster_config(first_master, pools, token))
        return render_template(
            "addons/cluster_autoscaler.yaml.j2",
            image=ca.image,
            node_args=self.node_group_args(pools),
            scan_interval=ca.scan_interval,
            scale_down_delay_after_add=ca.scale_down_delay_after_add,
            scale_down_unneeded_time=ca.scale_down_unneeded_time,
            cluster_config=base64.b64encode(config_json.encode()).decode(),
            ssh_key=ssh_key_name(self.spec.cluster_name),
            firewall=firewall_name(self.spec.cluster_name),
            network=self.spec.cluster_name if self.spec.private_network_enabled else "",
            public_ipv4=str(public.ipv4 and not nat).lower(),
            public_ipv6=str(public.ipv6 and not nat).lower(),
        )
