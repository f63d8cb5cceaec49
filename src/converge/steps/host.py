# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/converge/steps/host.py
from __future__ import annotations

import json
from typing import Iterable, List, Optional, Sequence, Set

from converge.errors import PrerequisiteMissing
from converge.runner.base import CommandResult, CommandRunner, require_ok, shq


class HostOps:
    """
    Typed, read-or-converge helpers over a CommandRunner. Every probe here is
    read-only; every mutator is guarded so re-running it is harmless.
    """

    def __init__(self, runner: CommandRunner, *, kubeconfig: str = "/etc/kubernetes/admin.conf"):
        self.runner = runner
        self.kubeconfig = kubeconfig

    @property
    def label(self) -> str:
        return self.runner.label

    # ------------------ raw ------------------

    def run(self, cmd: str, *, sudo: bool = True, secrets: Sequence[str] = (), timeout: Optional[float] = None) -> CommandResult:
        return self.runner.run(cmd, sudo=sudo, secrets=secrets, timeout=timeout)

    def must(
        self,
        cmd: str,
        *,
        sudo: bool = True,
        secrets: Sequence[str] = (),
        message: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> CommandResult:
        return require_ok(self.run(cmd, sudo=sudo, secrets=secrets, timeout=timeout), message)

    # ------------------ tools ------------------

    def has_command(self, name: str) -> bool:
        return self.run(f"command -v {shq(name)}", sudo=False).ok

    def require_command(self, name: str) -> None:
        if not self.has_command(name):
            raise PrerequisiteMissing(f"[{self.label}] required tool '{name}' is not installed", command=f"command -v {name}")

    # ------------------ files ------------------

    def exists(self, path: str) -> bool:
        return self.run(f"test -e {shq(path)}").ok

    def is_dir(self, path: str) -> bool:
        return self.run(f"test -d {shq(path)}").ok

    def read_file(self, path: str) -> Optional[str]:
        res = self.run(f"cat {shq(path)}")
        return res.stdout if res.ok else None

    def write_file(self, path: str, content: str, *, mode: int = 0o644) -> bool:
        """Write *content* unless the file already holds exactly that. Returns True on change."""
        if self.read_file(path) == content:
            return False
        self.runner.put_text(content, path, mode=mode, sudo=True)
        return True

    def ensure_dir(self, path: str, *, mode: int = 0o755) -> bool:
        if self.is_dir(path):
            return False
        self.must(f"install -d -m {oct(mode)[2:]} {shq(path)}")
        return True

    # ------------------ packages ------------------

    def package_installed(self, pkg: str) -> bool:
        res = self.run(f"dpkg-query -W -f='${{Status}}' {shq(pkg)}", sudo=False)
        return res.ok and "install ok installed" in res.stdout

    def missing_packages(self, pkgs: Iterable[str]) -> List[str]:
        return [p for p in pkgs if not self.package_installed(p)]

    def apt_update(self) -> None:
        self.must("apt-get update -y")

    def install_packages(self, pkgs: Sequence[str]) -> None:
        self.must("DEBIAN_FRONTEND=noninteractive apt-get install -y " + " ".join(shq(p) for p in pkgs))

    def held_packages(self) -> Set[str]:
        res = self.run("apt-mark showhold", sudo=False)
        return set(res.stdout.split()) if res.ok else set()

    def hold_packages(self, pkgs: Sequence[str]) -> None:
        self.must("apt-mark hold " + " ".join(shq(p) for p in pkgs))

    # ------------------ kernel ------------------

    def loaded_modules(self) -> Set[str]:
        content = self.read_file("/proc/modules") or ""
        return {ln.split()[0] for ln in content.splitlines() if ln.strip()}

    def load_module(self, name: str) -> None:
        self.must(f"modprobe {shq(name)}")

    def sysctl(self, key: str) -> Optional[str]:
        res = self.run(f"sysctl -n {shq(key)}", sudo=False)
        return res.stdout.strip() if res.ok else None

    def reload_sysctl(self) -> None:
        self.must("sysctl --system")

    def swap_active(self) -> bool:
        res = self.run("swapon --show --noheadings", sudo=False)
        return bool(res.stdout.strip())

    def disable_swap(self) -> None:
        self.must("swapoff -a")
        self.must(r"sed -i '/ swap / s/^\([^#].*\)$/#\1/g' /etc/fstab")

    # ------------------ capacity ------------------

    def cpu_count(self) -> int:
        return int(self.must("nproc", sudo=False).stdout.strip())

    def memory_kb(self) -> int:
        for line in (self.read_file("/proc/meminfo") or "").splitlines():
            if line.startswith("MemTotal:"):
                return int(line.split()[1])
        raise PrerequisiteMissing(f"[{self.label}] cannot read MemTotal from /proc/meminfo", command="cat /proc/meminfo")

    def disk_free_kb(self, path: str) -> int:
        out = self.must(f"df -Pk {shq(path)}", sudo=False).stdout.splitlines()
        return int(out[1].split()[3])

    # ------------------ identity ------------------

    def current_hostname(self) -> str:
        return self.must("hostname", sudo=False).stdout.strip()

    def set_hostname(self, name: str) -> None:
        self.must(f"hostnamectl set-hostname {shq(name)}")

    # ------------------ services ------------------

    def service_active(self, unit: str) -> bool:
        return self.run(f"systemctl is-active --quiet {shq(unit)}").ok

    def systemctl(self, action: str, unit: str) -> None:
        self.must(f"systemctl {action} {shq(unit)}")

    # ------------------ kubernetes ------------------

    def kubectl(self, args: str, *, check: bool = True, timeout: Optional[float] = None) -> CommandResult:
        cmd = f"kubectl --kubeconfig {shq(self.kubeconfig)} {args}"
        return self.must(cmd, timeout=timeout) if check else self.run(cmd, timeout=timeout)

    def resource_exists(self, ref: str, namespace: Optional[str] = None) -> bool:
        ns = f"-n {shq(namespace)} " if namespace else ""
        return self.kubectl(f"{ns}get {shq(ref)} -o name", check=False).ok

    def get_json(self, ref: str, namespace: Optional[str] = None) -> Optional[dict]:
        ns = f"-n {shq(namespace)} " if namespace else ""
        res = self.kubectl(f"{ns}get {shq(ref)} -o json", check=False)
        if not res.ok:
            return None
        return json.loads(res.stdout or "{}")

    def apply_manifest(self, content: str, name: str) -> CommandResult:
        path = f"/tmp/converge-{name}.yaml"
        self.runner.put_text(content, path, mode=0o600, sudo=True)
        return self.kubectl(f"apply -f {shq(path)}")

    def apply_url(self, url: str, *, server_side: bool = False) -> CommandResult:
        flag = " --server-side --force-conflicts" if server_side else ""
        return self.kubectl(f"apply{flag} -f {shq(url)}")

    def rollout_ready(self, ref: str, namespace: str, *, wait_seconds: int = 10) -> bool:
        res = self.kubectl(
            f"-n {shq(namespace)} rollout status {shq(ref)} --timeout={wait_seconds}s", check=False
        )
        return res.ok

    # ------------------ firewall ------------------

    def iptables_rules(self) -> str:
        return self.must("iptables -S").stdout

    def iptables_restore(self, payload: str) -> None:
        path = "/tmp/converge-iptables.rules"
        self.runner.put_text(payload, path, mode=0o600, sudo=True)
        self.must(f"iptables-restore --noflush {shq(path)}")
