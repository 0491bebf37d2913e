# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

import subprocess

import pytest

from k3forge.k8s import kubectl as kubectl_mod
from k3forge.k8s.kubectl import KubectlClient, KubectlError


class FakeRun:
    def __init__(self, returncode=0, stdout="", stderr="", raises=None):
        self.calls = []
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        self.raises = raises

    def __call__(self, argv, **kwargs):
        self.calls.append((argv, kwargs))
        if self.raises:
            raise self.raises
        return subprocess.CompletedProcess(argv, self.returncode, self.stdout, self.stderr)


@pytest.fixture
def fake_run(monkeypatch):
    fake = FakeRun()
    monkeypatch.setattr(kubectl_mod.subprocess, "run", fake)
    return fake


def test_apply_manifest_pipes_stdin(fake_run, tmp_path):
    client = KubectlClient(tmp_path / "kubeconfig")
    client.apply_manifest("kind: Namespace\n")

    ((argv, kwargs),) = fake_run.calls
    assert argv == ["kubectl", "--kubeconfig", str(tmp_path / "kubeconfig"), "apply", "-f", "-"]
    assert kwargs["input"] == "kind: Namespace\n"
    assert kwargs["text"] is True


def test_apply_url(fake_run, tmp_path):
    KubectlClient(tmp_path / "kc", binary="/usr/local/bin/kubectl").apply_url("https://example.com/x.yaml")
    argv, _ = fake_run.calls[0]
    assert argv[0] == "/usr/local/bin/kubectl"
    assert argv[-3:] == ["apply", "-f", "https://example.com/x.yaml"]


def test_nonzero_exit_raises_with_stderr(fake_run, tmp_path):
    fake_run.returncode = 1
    fake_run.stderr = "error: the server could not find the requested resource\n"

    with pytest.raises(KubectlError, match="could not find the requested resource"):
        KubectlClient(tmp_path / "kc").apply_url("https://example.com/x.yaml")


def test_exists(fake_run, tmp_path):
    client = KubectlClient(tmp_path / "kc")
    assert client.exists("secret", "hcloud", "kube-system") is True
    assert fake_run.calls[0][0][-5:] == ["get", "secret", "hcloud", "-n", "kube-system"]

    fake_run.returncode = 1
    assert client.exists("secret", "hcloud") is False


def test_missing_binary(monkeypatch, tmp_path):
    monkeypatch.setattr(kubectl_mod.subprocess, "run", FakeRun(raises=FileNotFoundError("kubectl")))
    with pytest.raises(KubectlError, match="failed to run kubectl"):
        KubectlClient(tmp_path / "kc").exists("secret", "hcloud")


def test_every_call_carries_a_deadline(fake_run, tmp_path):
    KubectlClient(tmp_path / "kc").apply_url("https://example.com/x.yaml")
    KubectlClient(tmp_path / "kc", timeout=5).exists("secret", "hcloud")

    assert [kwargs["timeout"] for _, kwargs in fake_run.calls] == [kubectl_mod.KUBECTL_TIMEOUT, 5]


def test_timeout_raises_kubectl_error(monkeypatch, tmp_path):
    expired = subprocess.TimeoutExpired(["kubectl"], 5)
    monkeypatch.setattr(kubectl_mod.subprocess, "run", FakeRun(raises=expired))

    with pytest.raises(KubectlError, match="timed out after 5s"):
        KubectlClient(tmp_path / "kc", timeout=5).apply_manifest("kind: Namespace\n")
