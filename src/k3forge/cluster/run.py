# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/k3forge/cluster/run.py

from __future__ import annotations

import logging
import queue
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional

import typer

from k3forge.cloud.models import Server
from k3forge.cloud.provisioner import ResourceProvisioner
from k3forge.config.models import ClusterSpec
from k3forge.errors import (
    AggregateError,
    ConfigError,
    ConfirmationDeclined,
    NodeOperationError,
    ResourceNotFoundError,
)
from k3forge.utils.ssh import RemoteExecutor

from .helpers import attach_nat_bastion, discover_cluster_servers
from .pipeline import Pipeline

log = logging.getLogger("k3forge")

CONFIRM_WORD = "continue"


@dataclass
class NodeResult:
    name: str
    address: Optional[str]
    output: str = ""
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class Runner(Pipeline):
    """Runs one command or script on every cluster node, or on a single one."""

    name = "run"

    def __init__(
        self,
        spec: ClusterSpec,
        provisioner: ResourceProvisioner,
        executor: RemoteExecutor,
        *,
        command: Optional[str] = None,
        script: Optional[str | Path] = None,
        instance: Optional[str] = None,
        prompt: Callable[[str], str] = input,
        echo: Callable[[str], None] = typer.echo,
        **kwargs,
    ):
        super().__init__(spec, **kwargs)
        if bool(command) == bool(script):
            raise ConfigError("exactly one of command or script is required")
        self.provisioner = provisioner
        self.executor = executor
        self.command = command
        self.script = Path(script).expanduser() if script else None
        self.instance = instance
        self.prompt = prompt
        self.echo = echo

    # ------------------------------------------------------------------
    def _load_script(self) -> str:
        if not self.script.exists():
            raise ConfigError(f"script file not found: {self.script}")
        if not self.script.is_file():
            raise ConfigError(f"script path is not a file: {self.script}")
        return self.script.read_text()

    def nodes(self) -> List[Server]:
        if self.instance:
            server = self.provisioner.client.get_server(self.instance)
            if server is None:
                raise ResourceNotFoundError(f"instance {self.instance} not found")
            return [server]
        servers = discover_cluster_servers(self.provisioner, self.spec)
        nodes = [s for s in servers if s.labels.get("role") != "nat-gateway"]
        return sorted(nodes, key=lambda s: s.name)

    def confirm(self, nodes: List[Server]) -> None:
        what = f"script {self.script.name}" if self.script else f"command: {self.command}"
        self.echo(f"About to run {what}")
        self.echo(f"On {len(nodes)} node(s):")
        for node in nodes:
            if node.address:
                self.echo(f"  - {node.name} ({node.address})")
            else:
                self.echo(f"  - {node.name} (no IP address, skipped)")
        answer = self.prompt(f"Type '{CONFIRM_WORD}' to proceed: ").strip()
        if answer != CONFIRM_WORD:
            raise ConfirmationDeclined("run aborted by operator")

    def _execute(self, node: Server, script_body: Optional[str]) -> NodeResult:
        result = NodeResult(name=node.name, address=node.address)
        if not node.address:
            result.error = ResourceNotFoundError(f"{node.name} has no IP address")
            return result
        ssh = self.spec.networking.ssh
        try:
            if script_body is not None:
                result.output = self.executor.upload_and_run(
                    node.address, ssh.port, script_body, name=self.script.name, use_agent=ssh.use_agent
                )
            else:
                result.output = self.executor.run(node.address, ssh.port, self.command, use_agent=ssh.use_agent)
        except Exception as exc:
            result.error = exc
        return result

    def _print(self, result: NodeResult) -> None:
        self.echo(f"=== Instance: {result.name} ===")
        if result.ok:
            self.echo(result.output.rstrip("\n"))
        else:
            self.echo(f"Error: {result.error}")
        self.echo("")

    # ------------------------------------------------------------------
    def run(self) -> List[NodeResult]:
        script_body = self._load_script() if self.script else None

        with self.running():
            with self.step("discover nodes"):
                attach_nat_bastion(self.provisioner, self.executor, self.spec)
                nodes = self.nodes()
                if not nodes:
                    log.info("No nodes found for cluster %s", self.spec.cluster_name)
                    return []
            self.confirm(nodes)

            with self.step("execute"):
                results_q: "queue.Queue[NodeResult]" = queue.Queue(maxsize=len(nodes))
                with ThreadPoolExecutor(max_workers=len(nodes)) as pool:
                    for node in nodes:
                        pool.submit(lambda n=node: results_q.put(self._execute(n, script_body)))
                    results: List[NodeResult] = []
                    for _ in nodes:
                        result = results_q.get()
                        self._print(result)
                        results.append(result)

            failures = [NodeOperationError(r.name, r.error) for r in results if not r.ok]
            if failures:
                raise AggregateError(f"command failed on {len(failures)} of {len(results)} node(s)", failures)
        return results
