# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/k3forge/k8s/kubectl.py

from __future__ import annotations

import logging
import subprocess
from pathlib import Path
from typing import List, Optional

from k3forge.errors import K3ForgeError

log = logging.getLogger("k3forge")

# seconds; applying a remote manifest includes downloading it
KUBECTL_TIMEOUT = 300


class KubectlError(K3ForgeError):
    """kubectl exited non-zero (or could not be started)."""


class KubectlClient:
    """Thin wrapper around the local kubectl binary, pinned to one kubeconfig."""

    def __init__(self, kubeconfig: str | Path, *, binary: str = "kubectl", timeout: float = KUBECTL_TIMEOUT):
        self.kubeconfig = Path(kubeconfig).expanduser()
        self.binary = binary
        self.timeout = timeout

    def _argv(self, args: List[str]) -> List[str]:
        return [self.binary, "--kubeconfig", str(self.kubeconfig), *args]

    def run(self, args: List[str], *, stdin: Optional[str] = None, check: bool = True) -> subprocess.CompletedProcess:
        argv = self._argv(args)
        log.debug("kubectl %s", " ".join(args))
        try:
            cp = subprocess.run(
                argv, check=False, text=True, capture_output=True, input=stdin, timeout=self.timeout
            )
        except subprocess.TimeoutExpired as e:
            raise KubectlError(f"kubectl {' '.join(args)} timed out after {self.timeout}s") from e
        except OSError as e:
            raise KubectlError(f"failed to run {self.binary}: {e}") from e
        if check and cp.returncode != 0:
            raise KubectlError(
                f"kubectl {' '.join(args)} failed (exit {cp.returncode}): {(cp.stderr or cp.stdout or '').strip()}"
            )
        return cp

    def apply_url(self, url: str) -> None:
        self.run(["apply", "-f", url])

    def apply_manifest(self, manifest: str) -> None:
        self.run(["apply", "-f", "-"], stdin=manifest)

    def exists(self, kind: str, name: str, namespace: Optional[str] = None) -> bool:
        args = ["get", kind, name]
        if namespace:
            args += ["-n", namespace]
        return self.run(args, check=False).returncode == 0
