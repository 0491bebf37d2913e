# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/k3forge/cloudinit/generator.py

from __future__ import annotations

import ipaddress
from typing import List, Optional, Sequence, Union

from k3forge.config.models import ClusterSpec, MastersPool, WorkerPool
from k3forge.utils.templates import render_template

BASE_PACKAGES = ("fail2ban", "wireguard")

Pool = Union[MastersPool, WorkerPool]


def network_gateway(subnet: str) -> str:
    """Hetzner routes a private network through its first host address."""
    net = ipaddress.ip_network(subnet, strict=False)
    return str(net.network_address + 1)


def _packages(spec: ClusterSpec, pool: Optional[Pool]) -> List[str]:
    packages = list(BASE_PACKAGES) + list(spec.additional_packages)
    if pool is not None:
        packages += pool.additional_packages
    # keep order, drop repeats
    return list(dict.fromkeys(packages))


def generate_node_cloud_init(
    spec: ClusterSpec,
    pool: Optional[Pool] = None,
    *,
    extra_commands: Sequence[str] = (),
) -> str:
    """
    cloud-config for a master or worker.

    *extra_commands* run after the pre-k3s commands; the autoscaler uses it
    to embed the k3s agent join for servers it creates on its own.
    """
    bootcmd: List[str] = []
    if spec.nat_gateway_enabled:
        gateway = network_gateway(spec.networking.private_network.subnet)
        bootcmd.append(f"ip route replace default via {gateway}")

    runcmd: List[str] = list(spec.additional_pre_k3s_commands)
    if pool is not None:
        runcmd += pool.additional_pre_k3s_commands
    runcmd += [
        "hostnamectl set-hostname $(curl -s http://169.254.169.254/hetzner/v1/metadata/hostname)",
        "systemctl restart ssh || systemctl restart sshd",
        'echo "nameserver 8.8.8.8" > /etc/k8s-resolv.conf',
    ]
    runcmd += list(extra_commands)
    runcmd += spec.additional_post_k3s_commands
    if pool is not None:
        runcmd += pool.additional_post_k3s_commands

    return render_template(
        "cloudinit/cloud_init.yaml.j2",
        packages=_packages(spec, pool),
        ssh_port=spec.networking.ssh.port,
        bootcmd=bootcmd,
        runcmd=runcmd,
    )


def generate_nat_gateway_cloud_init(subnet: str) -> str:
    return render_template("cloudinit/nat_gateway_cloud_init.yaml.j2", subnet=subnet)
