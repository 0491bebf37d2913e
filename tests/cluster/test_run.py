# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

import pytest

from k3forge.cloud.models import PrivateNet
from k3forge.cloud.provisioner import ResourceProvisioner
from k3forge.cluster.run import CONFIRM_WORD, Runner
from k3forge.errors import (
    AggregateError,
    ConfigError,
    ConfirmationDeclined,
    ResourceNotFoundError,
    SSHCommandError,
)


class Console:
    def __init__(self, *answers):
        self.lines = []
        self.questions = []
        self._answers = list(answers)

    def echo(self, line):
        self.lines.append(line)

    def prompt(self, question):
        self.questions.append(question)
        return self._answers.pop(0)


@pytest.fixture
def nodes(cloud):
    cloud.add_server("demo-master-1", {"cluster": "demo", "role": "master"}, public_ipv4="203.0.113.10")
    cloud.add_server("demo-worker-small-1", {"cluster": "demo", "role": "worker"}, public_ipv4="203.0.113.20")
    cloud.add_server("demo-nat-gateway", {"cluster": "demo", "role": "nat-gateway"}, public_ipv4="203.0.113.1")
    return cloud


def _runner(make_spec, cloud, executor, console, **kwargs):
    return Runner(
        make_spec(), ResourceProvisioner(cloud), executor, prompt=console.prompt, echo=console.echo, **kwargs
    )


def test_needs_exactly_one_of_command_or_script(make_spec, cloud, executor):
    with pytest.raises(ConfigError):
        _runner(make_spec, cloud, executor, Console())
    with pytest.raises(ConfigError):
        _runner(make_spec, cloud, executor, Console(), command="uptime", script="x.sh")


def test_command_on_every_node(make_spec, nodes, executor):
    executor.responses["uptime"] = lambda host: f"up on {host}\n"
    console = Console(CONFIRM_WORD)

    results = _runner(make_spec, nodes, executor, console, command="uptime").run()

    assert sorted(r.name for r in results) == ["demo-master-1", "demo-worker-small-1"]
    assert all(r.ok for r in results)
    assert sorted(h for h, _ in executor.commands) == ["203.0.113.10", "203.0.113.20"]

    assert console.lines[:4] == [
        "About to run command: uptime",
        "On 2 node(s):",
        "  - demo-master-1 (203.0.113.10)",
        "  - demo-worker-small-1 (203.0.113.20)",
    ]
    assert "=== Instance: demo-master-1 ===" in console.lines
    header = console.lines.index("=== Instance: demo-worker-small-1 ===")
    assert console.lines[header + 1] == "up on 203.0.113.20"
    # the gateway is the bastion, never a target
    assert executor.bastion == ("203.0.113.1", 22)


def test_wrong_confirmation_runs_nothing(make_spec, nodes, executor):
    with pytest.raises(ConfirmationDeclined):
        _runner(make_spec, nodes, executor, Console("yes"), command="reboot").run()
    assert not executor.commands


def test_script_is_uploaded_under_its_name(make_spec, nodes, executor, tmp_path):
    script = tmp_path / "rotate-logs.sh"
    script.write_text("#!/bin/bash\njournalctl --vacuum-time=2d\n")

    _runner(make_spec, nodes, executor, Console(CONFIRM_WORD), script=str(script)).run()

    assert len(executor.uploads) == 2
    assert {name for _, name, _ in executor.uploads} == {"rotate-logs.sh"}
    assert all(body == script.read_text() for _, _, body in executor.uploads)


def test_missing_script_fails_before_discovery(make_spec, nodes, executor, tmp_path):
    with pytest.raises(ConfigError, match="not found"):
        _runner(make_spec, nodes, executor, Console(), script=str(tmp_path / "nope.sh")).run()
    assert not nodes.calls_to("list_servers")


def test_failures_are_reported_per_node(make_spec, nodes, executor):
    def _fail_on_worker(host):
        if host == "203.0.113.20":
            raise SSHCommandError(host, "false", 1, "boom")
        return "ok\n"

    executor.responses["false"] = _fail_on_worker
    console = Console(CONFIRM_WORD)

    with pytest.raises(AggregateError, match="1 of 2") as exc:
        _runner(make_spec, nodes, executor, console, command="false").run()

    (error,) = exc.value.errors
    assert error.node == "demo-worker-small-1"
    header = console.lines.index("=== Instance: demo-worker-small-1 ===")
    assert console.lines[header + 1].startswith("Error: ")
    # the healthy node still ran and printed
    assert "ok" in console.lines


def test_single_instance(make_spec, nodes, executor):
    console = Console(CONFIRM_WORD)
    results = _runner(make_spec, nodes, executor, console, command="hostname", instance="demo-worker-small-1").run()

    assert [r.name for r in results] == ["demo-worker-small-1"]
    assert executor.commands == [("203.0.113.20", "hostname")]
    assert not nodes.calls_to("list_servers")


def test_unknown_instance(make_spec, nodes, executor):
    with pytest.raises(ResourceNotFoundError, match="demo-ghost"):
        _runner(make_spec, nodes, executor, Console(), command="hostname", instance="demo-ghost").run()


def test_node_without_address_is_skipped_and_reported(make_spec, cloud, executor):
    cloud.add_server("demo-master-1", {"cluster": "demo", "role": "master"}, public_ipv4="203.0.113.10")
    cloud.add_server("demo-worker-small-1", {"cluster": "demo", "role": "worker"})
    console = Console(CONFIRM_WORD)

    with pytest.raises(AggregateError):
        _runner(make_spec, cloud, executor, console, command="uptime").run()

    assert "  - demo-worker-small-1 (no IP address, skipped)" in console.lines
    assert [h for h, _ in executor.commands] == ["203.0.113.10"]


def test_private_nodes_are_reached_by_private_ip(make_spec, cloud, executor):
    cloud.add_server(
        "demo-master-1", {"cluster": "demo", "role": "master"}, private_net=(PrivateNet(network_id=1, ip="10.0.0.2"),)
    )
    _runner(make_spec, cloud, executor, Console(CONFIRM_WORD), command="uptime").run()
    assert executor.commands == [("10.0.0.2", "uptime")]


def test_no_nodes(make_spec, cloud, executor):
    console = Console()
    assert _runner(make_spec, cloud, executor, console, command="uptime").run() == []
    assert not console.questions
