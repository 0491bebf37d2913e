# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

import logging
import textwrap

import pytest
from typer.testing import CliRunner

from k3forge.cli import app as app_mod

runner = CliRunner()


@pytest.fixture(autouse=True)
def quiet_logging(monkeypatch, tmp_path):
    logger = logging.getLogger("k3forge.test.cli")
    monkeypatch.setattr(
        app_mod, "init_logging", lambda **_kw: (logger, "run-1", tmp_path / "k3forge.log")
    )
    monkeypatch.delenv("HCLOUD_TOKEN", raising=False)


def test_version():
    result = runner.invoke(app_mod.app, ["version"])
    assert result.exit_code == 0
    assert result.output.strip()


def test_releases(monkeypatch):
    monkeypatch.setattr(app_mod, "fetch_releases", lambda: ["v1.31.0+k3s1", "v1.32.0+k3s1"])
    result = runner.invoke(app_mod.app, ["releases"])
    assert result.exit_code == 0
    assert result.output.splitlines() == ["v1.31.0+k3s1", "v1.32.0+k3s1"]


@pytest.mark.parametrize("args", [[], ["--command", "uptime", "--script", "x.sh"]])
def test_run_needs_exactly_one_of_command_or_script(tmp_path, args):
    result = runner.invoke(app_mod.app, ["run", "--config", str(tmp_path / "c.yaml"), *args])
    assert result.exit_code == 2


def test_invalid_config_exits_1(tmp_path):
    cfg = tmp_path / "cluster.yaml"
    cfg.write_text(
        textwrap.dedent("""
            cluster_name: Not_Valid
            k3s_version: v1.32.0+k3s1
            masters_pool:
              instance_type: cpx21
        """)
    )
    result = runner.invoke(app_mod.app, ["create", "--config", str(cfg)])
    assert result.exit_code == 1
    assert "cluster_name" in result.output


def test_delete_without_token_exits_1(tmp_path):
    cfg = tmp_path / "cluster.yaml"
    cfg.write_text("cluster_name: demo\nk3s_version: v1.32.0+k3s1\nmasters_pool:\n  instance_type: cpx21\n")
    result = runner.invoke(app_mod.app, ["delete", "--config", str(cfg), "--force"])
    assert result.exit_code == 1
    assert "hetzner_token is required" in result.output


def test_upgrade_requires_version(tmp_path):
    result = runner.invoke(app_mod.app, ["upgrade", "--config", str(tmp_path / "c.yaml")])
    assert result.exit_code == 2


def test_force_does_not_override_deletion_protection(tmp_path):
    cfg = tmp_path / "cluster.yaml"
    cfg.write_text(
        "hetzner_token: test-token\ncluster_name: demo\nk3s_version: v1.32.0+k3s1\n"
        "masters_pool:\n  instance_type: cpx21\n"
    )
    result = runner.invoke(app_mod.app, ["delete", "--config", str(cfg), "--force"])
    assert result.exit_code == 1
    assert "protected against deletion" in result.output

    help_text = runner.invoke(app_mod.app, ["delete", "--help"]).output
    assert "protect_against_deletion" in help_text
