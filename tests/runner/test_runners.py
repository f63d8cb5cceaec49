import socket
import subprocess

import paramiko
import pytest

from converge.config.models import Node, SshSettings
from converge.errors import (
    ExternalToolFailure,
    NetworkUnreachable,
    PermissionDenied,
    PrerequisiteMissing,
    StepTimeout,
)
from converge.runner import local as local_mod
from converge.runner import ssh as ssh_mod
from converge.runner.base import CommandResult, classify, redact, require_ok, wrap_sudo
from converge.runner.local import LocalRunner
from converge.runner.ssh import SSHRunner, open_ssh


# ----------------- base -----------------

@pytest.mark.parametrize(
    "rc,stderr,expected",
    [
        (127, "bash: kubeadm: command not found", PrerequisiteMissing),
        (1, "E: Could not open lock file - open (13: Permission denied)", PermissionDenied),
        (1, "sudo: a password is required", PermissionDenied),
        (1, "curl: (6) Could not resolve host: pkgs.k8s.io", NetworkUnreachable),
        (2, "error: the server doesn't have a resource type", ExternalToolFailure),
    ],
)
def test_classify(rc, stderr, expected):
    err = classify(CommandResult(cmd="x", rc=rc, stderr=stderr))
    assert type(err) is expected
    assert err.exit_code == rc
    assert err.stderr == stderr
    assert err.command == "x"


def test_require_ok_passes_through_success():
    res = CommandResult(cmd="true", rc=0, stdout="ok")
    assert require_ok(res) is res


def test_redact_masks_every_occurrence_and_ignores_empty():
    assert redact("a=s3cr3t b=s3cr3t", ["s3cr3t", ""]) == "a=******** b=********"
    assert redact("", ["x"]) == ""


def test_wrap_sudo():
    assert wrap_sudo("echo hi", False) == "bash -lc 'echo hi'"
    assert wrap_sudo("echo hi", True) == "sudo -n -H bash -lc 'echo hi'"
    assert wrap_sudo("echo hi", True, password_on_stdin=True) == "sudo -S -H bash -lc 'echo hi'"


# ----------------- local -----------------

class FakeSubprocess:
    def __init__(self, rc=0, stdout="", stderr="", exc=None):
        self.argv = []
        self.rc, self.stdout, self.stderr, self.exc = rc, stdout, stderr, exc

    def __call__(self, argv, **kwargs):
        self.argv.append(argv)
        if self.exc:
            raise self.exc
        return subprocess.CompletedProcess(argv, self.rc, self.stdout, self.stderr)


@pytest.fixture
def fake_subprocess(monkeypatch):
    def install(**kw):
        fake = FakeSubprocess(**kw)
        monkeypatch.setattr(local_mod.subprocess, "run", fake)
        monkeypatch.setattr(local_mod.os, "geteuid", lambda: 1000)
        return fake
    return install


def test_local_runner_wraps_sudo_and_redacts(fake_subprocess):
    fake = fake_subprocess(stdout="key=tskey-1\n")
    res = LocalRunner(label="m1").run("tailscale up --authkey=tskey-1", sudo=True, secrets=["tskey-1"])

    assert fake.argv[0] == ["sudo", "-n", "-H", "bash", "-lc", "tailscale up --authkey=tskey-1"]
    assert res.cmd == "tailscale up --authkey=********"
    assert res.stdout == "key=********\n"
    assert res.ok


def test_local_runner_without_sudo(fake_subprocess):
    fake = fake_subprocess(rc=3)
    res = LocalRunner().run("systemctl is-active --quiet kubelet")
    assert fake.argv[0][0] == "bash"
    assert res.rc == 3 and not res.ok


def test_local_runner_timeout(fake_subprocess):
    fake_subprocess(exc=subprocess.TimeoutExpired(cmd="x", timeout=5))
    with pytest.raises(StepTimeout):
        LocalRunner().run("sleep 10", timeout=5)


def test_local_runner_missing_shell(fake_subprocess):
    fake_subprocess(exc=FileNotFoundError("bash"))
    with pytest.raises(PrerequisiteMissing):
        LocalRunner().run("true")


def test_local_put_text_installs_into_place(fake_subprocess):
    fake = fake_subprocess()
    LocalRunner().put_text("overlay\n", "/etc/modules-load.d/k8s.conf", mode=0o600)
    cmd = fake.argv[0][-1]
    assert cmd.startswith("install -D -m 600 ")
    assert cmd.endswith(" /etc/modules-load.d/k8s.conf")


# ----------------- ssh -----------------

class _Chan:
    def __init__(self, rc): self.rc = rc
    def recv_exit_status(self): return self.rc


class _Stream:
    def __init__(self, data=b"", rc=0):
        self.data = data
        self.channel = _Chan(rc)
        self.written = []
    def read(self): return self.data
    def write(self, s): self.written.append(s)
    def flush(self): pass


class FakeSSHClient:
    def __init__(self, out=b"", err=b"", rc=0, exc=None):
        self.commands = []
        self.stdin = _Stream()
        self.out, self.err, self.rc, self.exc = out, err, rc, exc
        self.closed = False

    def exec_command(self, cmd, timeout=None):
        self.commands.append(cmd)
        if self.exc:
            raise self.exc
        return self.stdin, _Stream(self.out, self.rc), _Stream(self.err)

    def close(self):
        self.closed = True


def test_ssh_runner_runs_under_sudo_and_redacts():
    client = FakeSSHClient(out=b"joined with abc.def\n")
    runner = SSHRunner(client, label="w1")

    res = runner.run("kubeadm join x --token abc.def", sudo=True, secrets=["abc.def"])

    assert client.commands == ["sudo -n -H bash -lc 'kubeadm join x --token abc.def'"]
    assert res.cmd == "kubeadm join x --token ********"
    assert res.stdout == "joined with ********\n"


def test_ssh_runner_feeds_sudo_password_on_stdin():
    client = FakeSSHClient(out=b"")
    runner = SSHRunner(client, label="w1", sudo_password="hunter2")

    res = runner.run("echo hunter2", sudo=True)

    assert client.commands[0].startswith("sudo -S -H")
    assert client.stdin.written == ["hunter2\n"]
    assert res.cmd == "echo ********"


def test_ssh_runner_maps_transport_errors():
    with pytest.raises(NetworkUnreachable):
        SSHRunner(FakeSSHClient(exc=paramiko.SSHException("closed")), label="w1").run("true")
    with pytest.raises(StepTimeout):
        SSHRunner(FakeSSHClient(exc=socket.timeout()), label="w1").run("true")


def test_ssh_runner_close():
    client = FakeSSHClient()
    SSHRunner(client, label="w1").close()
    assert client.closed


NODE = Node(hostname="w1", ip="192.168.1.11", role="worker")


def _patch_client(monkeypatch, exc):
    created = []

    class Client:
        def __init__(self):
            self.closed = False
            created.append(self)
        def set_missing_host_key_policy(self, policy): pass
        def connect(self, **kwargs): raise exc
        def close(self): self.closed = True

    monkeypatch.setattr(ssh_mod.paramiko, "SSHClient", Client)
    return created


def test_open_ssh_auth_failure_is_not_retried(monkeypatch):
    created = _patch_client(monkeypatch, paramiko.AuthenticationException("bad key"))
    with pytest.raises(PermissionDenied):
        open_ssh(NODE, SshSettings(connect_attempts=3, connect_backoff=0))
    assert len(created) == 1 and created[0].closed


def test_open_ssh_gives_up_as_network_unreachable(monkeypatch):
    created = _patch_client(monkeypatch, OSError("No route to host"))
    with pytest.raises(NetworkUnreachable, match="after 2 attempts"):
        open_ssh(NODE, SshSettings(connect_attempts=2, connect_backoff=0))
    assert len(created) == 2
