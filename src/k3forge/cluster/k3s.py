# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/k3forge/cluster/k3s.py

from __future__ import annotations

import json
import logging
import secrets
import time
import urllib.error
import urllib.request
from pathlib import Path
from typing import Any, Callable, List, Optional, Sequence, Tuple

import yaml

from k3forge.config.models import ClusterSpec, Label, Taint
from k3forge.errors import K3ForgeError
from k3forge.utils.templates import render_template

log = logging.getLogger("k3forge")

INSTALL_TEMPLATES = {
    "first_master": "k3s/install_first_master.sh.j2",
    "additional_master": "k3s/install_additional_master.sh.j2",
    "worker": "k3s/install_worker.sh.j2",
}

KUBECONFIG_REMOTE_PATH = "/etc/rancher/k3s/k3s.yaml"
KUBECONFIG_CHECK_CMD = f"test -f {KUBECONFIG_REMOTE_PATH} && echo 'exists' || true"
KUBECONFIG_READ_CMD = f"sudo cat {KUBECONFIG_REMOTE_PATH}"

RELEASES_URL = "https://api.github.com/repos/k3s-io/k3s/tags"
RELEASES_CACHE = Path.home() / ".k3forge" / "k3s-releases.yaml"
RELEASES_CACHE_TTL = 7 * 24 * 3600


class ReleaseFetchError(K3ForgeError):
    pass


def generate_token() -> str:
    """32 random bytes, hex encoded. Lives only for one pipeline run."""
    return secrets.token_hex(32)


def service_active_cmd(service: str) -> str:
    if service not in ("k3s", "k3s-agent"):
        raise ValueError(f"invalid service name: {service} (expected 'k3s' or 'k3s-agent')")
    return f"systemctl is-active {service} 2>/dev/null || true"


def render_install_command(kind: str, **context: Any) -> str:
    try:
        template = INSTALL_TEMPLATES[kind]
    except KeyError:
        raise ValueError(f"unknown install kind: {kind}") from None
    return render_template(template, **context).strip()


def connectivity_probe() -> str:
    return render_template("k3s/test_connectivity.sh.j2").strip()


# ---------------------------------------------------------------------
# Flags
# ---------------------------------------------------------------------
def addon_flags(spec: ClusterSpec) -> str:
    addons = spec.addons
    flags = []
    if not addons.local_path_storage_class.enabled:
        flags.append("--disable local-storage")
    if not addons.traefik.enabled:
        flags.append("--disable traefik")
    if not addons.servicelb.enabled:
        flags.append("--disable servicelb")
    if not addons.metrics_server.enabled:
        flags.append("--disable metrics-server")
    if addons.embedded_registry_mirror.enabled:
        flags.append("--embedded-registry")
    return " ".join(flags)


def node_flags(labels: Sequence[Label], taints: Sequence[Taint]) -> List[str]:
    flags = [f"--node-label={l.key}={l.value}" for l in labels]
    flags += [f"--node-taint={t.key}={t.value}:{t.effect}" for t in taints]
    return flags


def kubelet_flags(spec: ClusterSpec) -> List[str]:
    flags = []
    if spec.addons.cloud_controller_manager.enabled:
        flags.append("--kubelet-arg=cloud-provider=external")
    flags += [f"--kubelet-arg={arg}" for arg in spec.kubelet_args]
    return flags


def server_flags(spec: ClusterSpec) -> str:
    net = spec.networking
    flags = [
        f"--cluster-cidr={net.cluster_cidr}",
        f"--service-cidr={net.service_cidr}",
        f"--cluster-dns={net.cluster_dns}",
    ]
    flags += kubelet_flags(spec)
    if spec.addons.cloud_controller_manager.enabled:
        flags.append("--disable-cloud-controller")
    flags += node_flags(spec.masters_pool.labels, spec.masters_pool.taints)
    return " ".join(flags)


def join_args(*parts: Optional[str]) -> str:
    return " ".join(p for p in parts if p)


# ---------------------------------------------------------------------
# Releases
# ---------------------------------------------------------------------
def _next_link(header: Optional[str]) -> bool:
    return bool(header) and 'rel="next"' in header


def _fetch_page(url: str) -> Tuple[list, Optional[str]]:
    req = urllib.request.Request(url, headers={"Accept": "application/vnd.github+json"})
    try:
        with urllib.request.urlopen(req, timeout=30) as resp:
            body = resp.read().decode("utf-8")
            return json.loads(body), resp.headers.get("Link")
    except urllib.error.HTTPError as e:
        raise ReleaseFetchError(f"GitHub API returned status {e.code}") from e
    except (urllib.error.URLError, OSError, ValueError) as e:
        raise ReleaseFetchError(f"failed to fetch releases: {e}") from e


def fetch_releases_from_github(
    fetch_page: Callable[[str], Tuple[list, Optional[str]]] = _fetch_page,
) -> List[str]:
    """All k3s tags, oldest first."""
    names: List[str] = []
    page = 1
    while True:
        items, link = fetch_page(f"{RELEASES_URL}?per_page=100&page={page}")
        if not items:
            break
        names.extend(item["name"] for item in items)
        if not _next_link(link):
            break
        page += 1
    names.reverse()
    return names


def fetch_releases(
    *,
    cache_path: Path = RELEASES_CACHE,
    fetch: Callable[[], List[str]] = fetch_releases_from_github,
) -> List[str]:
    if cache_path.is_file():
        age = time.time() - cache_path.stat().st_mtime
        if age <= RELEASES_CACHE_TTL:
            try:
                cached = yaml.safe_load(cache_path.read_text())
            except yaml.YAMLError:
                cached = None
            if isinstance(cached, list):
                log.debug("using cached k3s releases from %s", cache_path)
                return [str(r) for r in cached]
        cache_path.unlink()

    releases = fetch()
    try:
        cache_path.parent.mkdir(parents=True, exist_ok=True)
        cache_path.write_text(yaml.safe_dump(releases))
    except OSError as e:
        log.warning("failed to cache releases: %s", e)
    return releases
