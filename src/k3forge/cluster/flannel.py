# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/k3forge/cluster/flannel.py

from __future__ import annotations

from typing import Tuple

from k3forge.config.models import ClusterSpec
from k3forge.errors import ConfigError

# first k3s release that ships the in-kernel wireguard backend
NATIVE_WIREGUARD_SINCE = (1, 23, 6)

# Hetzner private interfaces come up with MTU 1450 (or 1280); skip CNI/bridge devices
DETECT_PRIVATE_IFACE_CMD = (
    "ip -o link show | awk -F': ' '/mtu (1450|1280)/ {print $2}' "
    "| grep -Ev 'cilium|br|flannel|docker|veth' | head -n1"
)


def parse_version(version: str) -> Tuple[int, int, int]:
    """'v1.23.6+k3s1' -> (1, 23, 6)"""
    core = version.strip()
    if core.startswith("v"):
        core = core[1:]
    core = core.split("+", 1)[0]
    parts = core.split(".")
    if len(parts) < 3:
        raise ConfigError(f"invalid k3s version format: {version}")
    try:
        return int(parts[0]), int(parts[1]), int(parts[2])
    except ValueError as e:
        raise ConfigError(f"invalid k3s version format: {version}") from e


def use_native_wireguard(version: str) -> bool:
    return parse_version(version) >= NATIVE_WIREGUARD_SINCE


def flannel_backend_flags(spec: ClusterSpec, version: str) -> str:
    cni = spec.networking.cni
    if not cni.enabled:
        return ""

    if cni.mode == "flannel":
        flags = []
        if cni.flannel.encryption:
            backend = "wireguard-native" if use_native_wireguard(version) else "wireguard"
            flags.append(f"--flannel-backend={backend}")
        if cni.flannel.disable_kube_proxy:
            flags.append("--disable-kube-proxy")
        return " ".join(flags)

    # any other CNI brings its own datapath and network policy
    flags = ["--flannel-backend=none", "--disable-network-policy"]
    if cni.mode == "cilium":
        flags.append("--disable-kube-proxy")
    return " ".join(flags)


def should_configure_flannel_interface(spec: ClusterSpec) -> bool:
    cni = spec.networking.cni
    return spec.private_network_enabled and cni.enabled and cni.mode == "flannel"
