# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/k3forge/utils/ssh.py

from __future__ import annotations

import logging
import shlex
import socket
import threading
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional, Tuple

import paramiko

from k3forge.errors import (
    ReadinessTimeoutError,
    SSHCommandError,
    SSHConnectionError,
    SSHError,
    SSHTimeoutError,
)
from k3forge.utils.templates import render_template

log = logging.getLogger("k3forge")

DEFAULT_CONNECT_TIMEOUT = 15.0
DEFAULT_COMMAND_TIMEOUT = 30.0
DEFAULT_MAX_ATTEMPTS = 20
DEFAULT_RETRY_DELAY = 5.0
# the wait script gives up after 5 minutes on its own
CLOUD_INIT_WAIT_TIMEOUT = 6 * 60.0

_READ_CHUNK = 32768
_IDLE_POLL = 0.1

LineCallback = Callable[[str, str, bool], None]


@dataclass(frozen=True)
class Bastion:
    host: str
    port: int = 22


@dataclass
class _Session:
    client: paramiko.SSHClient
    jump: Optional[paramiko.SSHClient] = None

    def close(self) -> None:
        try:
            self.client.close()
        finally:
            if self.jump is not None:
                self.jump.close()


class _LineBuffer:
    """Splits a byte stream into complete lines, keeping the partial tail."""

    def __init__(self):
        self._tail = ""

    def feed(self, data: bytes) -> List[str]:
        text = self._tail + data.decode("utf-8", errors="replace")
        parts = text.split("\n")
        self._tail = parts.pop()
        return [p.rstrip("\r") for p in parts if p.rstrip("\r")]

    def flush(self) -> List[str]:
        tail, self._tail = self._tail.rstrip("\r"), ""
        return [tail] if tail else []


def _first_line(command: str) -> str:
    stripped = command.strip()
    return stripped.splitlines()[0] if stripped else stripped


def _default_line_sink(prefix: str, line: str, is_stderr: bool) -> None:
    if is_stderr:
        log.warning("[%s] %s", prefix, line)
    else:
        log.info("[%s] %s", prefix, line)


class RemoteExecutor:
    """
    Runs commands on cluster nodes over SSH, optionally through one bastion hop.

    Every call opens its own connection, so one executor can be shared by the
    threads of a parallel step. Host keys are not verified: nodes are brand new
    and have no known key yet.
    """

    def __init__(
        self,
        private_key_path: Optional[str | Path] = None,
        *,
        user: str = "root",
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
        command_timeout: float = DEFAULT_COMMAND_TIMEOUT,
    ):
        self.private_key_path = (
            str(Path(private_key_path).expanduser()) if private_key_path else None
        )
        self.user = user
        self.connect_timeout = connect_timeout
        self.command_timeout = command_timeout

        self._bastion: Optional[Bastion] = None
        self._lock = threading.Lock()
        self._pkey: Optional[paramiko.PKey] = None
        self._pkey_loaded = False
        self._host_key_warning_done = False

    # ------------------ bastion ------------------

    @property
    def bastion(self) -> Optional[Bastion]:
        return self._bastion

    def set_bastion(self, host: str, port: int = 22) -> None:
        log.info("Using %s:%d as SSH bastion for all node connections", host, port)
        self._bastion = Bastion(host=host, port=port)

    def clear_bastion(self) -> None:
        self._bastion = None

    # ------------------ connection ------------------

    def _load_pkey(self) -> Optional[paramiko.PKey]:
        with self._lock:
            if self._pkey_loaded:
                return self._pkey
            pkey = None
            if self.private_key_path:
                for key_cls in (
                    paramiko.Ed25519Key,
                    paramiko.RSAKey,
                    paramiko.ECDSAKey,
                ):
                    try:
                        pkey = key_cls.from_private_key_file(self.private_key_path)
                        break
                    except (paramiko.SSHException, OSError):
                        continue
            self._pkey = pkey
            self._pkey_loaded = True
            return pkey

    def _warn_host_keys_once(self) -> None:
        with self._lock:
            if self._host_key_warning_done:
                return
            self._host_key_warning_done = True
        log.warning(
            "SSH host key verification is disabled: new nodes have no known host key yet"
        )

    def _connect_client(
        self,
        host: str,
        port: int,
        use_agent: bool,
        sock=None,
    ) -> paramiko.SSHClient:
        pkey = self._load_pkey()
        if pkey is None and not use_agent:
            raise SSHConnectionError(
                f"no usable private key at {self.private_key_path} and SSH agent disabled"
            )

        client = paramiko.SSHClient()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        try:
            client.connect(
                hostname=host,
                port=port,
                username=self.user,
                pkey=pkey,
                sock=sock,
                timeout=self.connect_timeout,
                banner_timeout=self.connect_timeout,
                auth_timeout=self.connect_timeout,
                allow_agent=use_agent,
                look_for_keys=False,
            )
        except socket.timeout as exc:
            client.close()
            raise SSHTimeoutError(
                f"connection to {host}:{port} timed out after {self.connect_timeout:.0f}s"
            ) from exc
        except (paramiko.SSHException, OSError) as exc:
            client.close()
            raise SSHConnectionError(f"failed to connect to {host}:{port}: {exc}") from exc
        return client

    def _open(self, host: str, port: int, use_agent: bool) -> _Session:
        self._warn_host_keys_once()

        bastion = self._bastion
        if bastion is None:
            return _Session(client=self._connect_client(host, port, use_agent))

        jump = self._connect_client(bastion.host, bastion.port, use_agent)
        try:
            transport = jump.get_transport()
            channel = transport.open_channel(
                "direct-tcpip",
                (host, port),
                ("127.0.0.1", 0),
                timeout=self.connect_timeout,
            )
        except (paramiko.SSHException, OSError) as exc:
            jump.close()
            raise SSHConnectionError(
                f"failed to tunnel to {host}:{port} through bastion {bastion.host}: {exc}"
            ) from exc

        try:
            client = self._connect_client(host, port, use_agent, sock=channel)
        except SSHError:
            jump.close()
            raise
        return _Session(client=client, jump=jump)

    # ------------------ execution ------------------

    def _exec(
        self,
        session: _Session,
        host: str,
        command: str,
        timeout: float,
        on_chunk: Optional[Callable[[bytes, bool], None]] = None,
    ) -> Tuple[int, str, str]:
        deadline = time.monotonic() + timeout
        try:
            _stdin, stdout, _stderr = session.client.exec_command(command, timeout=timeout)
        except socket.timeout as exc:
            raise SSHTimeoutError(f"[{host}] timed out starting command: {_first_line(command)}") from exc
        except (paramiko.SSHException, OSError) as exc:
            raise SSHConnectionError(f"[{host}] failed to start command: {exc}") from exc

        channel = stdout.channel
        out: List[bytes] = []
        err: List[bytes] = []

        while True:
            progressed = False
            while channel.recv_ready():
                data = channel.recv(_READ_CHUNK)
                if not data:
                    break
                out.append(data)
                progressed = True
                if on_chunk:
                    on_chunk(data, False)
            while channel.recv_stderr_ready():
                data = channel.recv_stderr(_READ_CHUNK)
                if not data:
                    break
                err.append(data)
                progressed = True
                if on_chunk:
                    on_chunk(data, True)

            if channel.exit_status_ready() and not channel.recv_ready() and not channel.recv_stderr_ready():
                break
            if time.monotonic() >= deadline:
                channel.close()
                raise SSHTimeoutError(
                    f"[{host}] command did not finish within {timeout:.0f}s: {_first_line(command)}"
                )
            if not progressed:
                time.sleep(_IDLE_POLL)

        status = channel.recv_exit_status()
        return (
            status,
            b"".join(out).decode("utf-8", errors="replace"),
            b"".join(err).decode("utf-8", errors="replace"),
        )

    def run(
        self,
        host: str,
        port: int,
        command: str,
        *,
        use_agent: bool = False,
        timeout: Optional[float] = None,
    ) -> str:
        """
        Run *command* and return its combined stdout+stderr.

        Raises SSHCommandError on a non-zero exit, SSHTimeoutError when the
        deadline expires and SSHConnectionError when the host cannot be reached.
        """
        timeout = timeout or self.command_timeout
        log.debug("[%s] $ %s", host, _first_line(command))
        session = self._open(host, port, use_agent)
        try:
            status, out, err = self._exec(session, host, command, timeout)
        finally:
            session.close()

        output = out + err
        if status != 0:
            raise SSHCommandError(host, command, status, output)
        return output

    def run_streaming(
        self,
        host: str,
        port: int,
        command: str,
        *,
        use_agent: bool = False,
        prefix: Optional[str] = None,
        timeout: Optional[float] = None,
        on_line: Optional[LineCallback] = None,
    ) -> None:
        """Run *command*, handing every complete output line to *on_line* as it arrives."""
        timeout = timeout or self.command_timeout
        prefix = prefix or host
        sink = on_line or _default_line_sink
        buffers = {False: _LineBuffer(), True: _LineBuffer()}

        def _on_chunk(data: bytes, is_stderr: bool) -> None:
            for line in buffers[is_stderr].feed(data):
                sink(prefix, line, is_stderr)

        log.debug("[%s] $ %s", host, _first_line(command))
        session = self._open(host, port, use_agent)
        try:
            status, out, err = self._exec(session, host, command, timeout, on_chunk=_on_chunk)
        finally:
            session.close()

        for is_stderr, buf in buffers.items():
            for line in buf.flush():
                sink(prefix, line, is_stderr)

        if status != 0:
            raise SSHCommandError(host, command, status, out + err)

    def upload_and_run(
        self,
        host: str,
        port: int,
        script: str,
        *,
        name: Optional[str] = None,
        use_agent: bool = False,
        timeout: Optional[float] = None,
    ) -> str:
        """
        Copy *script* to /tmp through a heredoc, run it and remove it again.

        The file is removed whether or not the script succeeded; a failed
        cleanup is logged and never hides the script's own result.
        """
        remote_path = shlex.quote(f"/tmp/{name or 'k3forge-' + uuid.uuid4().hex[:8] + '.sh'}")
        delimiter = heredoc_delimiter(script)
        body = script if script.endswith("\n") else script + "\n"

        upload = f"cat > {remote_path} << '{delimiter}'\n{body}{delimiter}\nchmod +x {remote_path}"
        self.run(host, port, upload, use_agent=use_agent)
        try:
            return self.run(host, port, remote_path, use_agent=use_agent, timeout=timeout)
        finally:
            try:
                self.run(host, port, f"rm -f {remote_path}", use_agent=use_agent)
            except SSHError as exc:
                log.warning("[%s] could not remove %s: %s", host, remote_path, exc)

    # ------------------ polling ------------------

    def wait_until(
        self,
        host: str,
        port: int,
        probe: str,
        expected: str,
        *,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        delay: float = DEFAULT_RETRY_DELAY,
        use_agent: bool = False,
    ) -> None:
        """Repeat *probe* until its trimmed output equals *expected*."""
        for attempt in range(1, max_attempts + 1):
            try:
                output = self.run(host, port, probe, use_agent=use_agent, timeout=self.command_timeout)
                if output.strip() == expected:
                    return
                log.debug(
                    "[%s] probe returned %r, want %r (attempt %d/%d)",
                    host, output.strip(), expected, attempt, max_attempts,
                )
            except SSHError as exc:
                log.debug(
                    "[%s] not ready (attempt %d/%d, %s: %s)",
                    host, attempt, max_attempts, type(exc).__name__, exc,
                )
            if attempt < max_attempts:
                time.sleep(delay)

        raise ReadinessTimeoutError(
            f"{host}:{port} never returned {expected!r} for {_first_line(probe)!r} "
            f"after {max_attempts} attempts"
        )

    def wait_for_boot(self, host: str, port: int, *, use_agent: bool = False) -> None:
        """Block until cloud-init has finished on *host*."""
        script = render_template("cloudinit/cloud_init_wait.sh")
        try:
            self.run(host, port, script, use_agent=use_agent, timeout=CLOUD_INIT_WAIT_TIMEOUT)
        except SSHTimeoutError as exc:
            raise SSHTimeoutError(
                f"[{host}] cloud-init did not complete within {CLOUD_INIT_WAIT_TIMEOUT:.0f}s"
            ) from exc
        except SSHError as exc:
            raise SSHError(f"[{host}] cloud-init did not complete: {exc}") from exc


def heredoc_delimiter(script: str) -> str:
    """A heredoc terminator guaranteed not to appear inside *script*."""
    while True:
        delimiter = f"K3FORGE_SCRIPT_{uuid.uuid4().hex.upper()}"
        if delimiter not in script:
            return delimiter
