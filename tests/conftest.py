"""Shared fixtures: a scratch host layout and a scripted command runner."""

import os
import struct
from pathlib import Path
from typing import Dict, List, Optional

import pytest

from modtrust.config import HostLayout
from modtrust.constants import BUILD_KERNEL_ENV, MODULE_SIGNATURE_MAGIC
from modtrust.host import CommandResult, CommandRunner

RUNNING_KERNEL = "6.8.0-45-generic"
COMMON_NAME = "VMware Kernel Module Signing"

SB_ENABLED = "SecureBoot enabled\n"
SB_DISABLED = "SecureBoot disabled\n"


def fake_signature(tag: bytes = b"sig") -> bytes:
    """Bytes sign-file would append: signature, module_signature struct, magic."""
    signature = b"PKCS7:" + tag
    info = struct.pack(">BBBBB3xI", 0, 0, 2, 0, 0, len(signature))
    return signature + info + MODULE_SIGNATURE_MAGIC


def module_bytes(module: str, kernel_version: str) -> bytes:
    return b"\x7fELF" + f"{module}@{kernel_version}".encode()


class FakeRunner(CommandRunner):
    """
    Emulates the host's external tools against files under tmp_path.

    Attributes tests usually tweak:
        sb_state        output of `mokutil --sb-state` (None = mokutil fails)
        enrolled        output of `mokutil --list-enrolled`
        pending         output of `mokutil --list-new`
        build_outputs   kernel version -> modules the build tool installs
        failing         command basenames (or "cmd arg") that exit 1
        tools           commands `which` resolves
    """

    def __init__(self, layout: HostLayout):
        self.layout = layout
        self.calls: List[dict] = []
        self.sb_state: Optional[str] = SB_DISABLED
        self.enrolled = "[key 1]\nSubject: CN=Canonical Ltd. Master Certificate Authority\n"
        self.pending = "MokNew is empty\n"
        self.build_outputs: Dict[str, List[str]] = {}
        self.failing = set()
        self.tools = {
            "vmware-modconfig", "mokutil", "depmod", "modprobe", "modinfo",
            "systemctl", "vmware-networks", "reboot",
        }
        self.running = RUNNING_KERNEL
        self.privileged = True

    # ------------------------------------------------------------------

    def commands(self, name: str) -> List[List[str]]:
        return [c["argv"] for c in self.calls if os.path.basename(c["argv"][0]) == name]

    def _fails(self, argv: List[str]) -> bool:
        name = os.path.basename(argv[0])
        return name in self.failing or " ".join([name] + argv[1:2]) in self.failing

    def run(self, argv, interactive=False, env=None) -> CommandResult:
        argv = [str(part) for part in argv]
        self.calls.append({"argv": argv, "interactive": interactive, "env": dict(env or {})})
        name = os.path.basename(argv[0])

        if self._fails(argv):
            return CommandResult(argv=argv, returncode=1, stderr=f"{name}: failed")

        if name == "mokutil":
            return self._mokutil(argv)
        if name == "vmware-modconfig":
            kernel_version = (env or {}).get(BUILD_KERNEL_ENV, self.running)
            for module in self.build_outputs.get(kernel_version, []):
                path = self.layout.modules_root / kernel_version / "misc" / f"{module}.ko"
                path.parent.mkdir(parents=True, exist_ok=True)
                path.write_bytes(module_bytes(module, kernel_version))
            return CommandResult(argv=argv, returncode=0)
        if name == "sign-file":
            target = Path(argv[5] if len(argv) > 5 else argv[4])
            with open(target, "ab") as f:
                f.write(fake_signature())
            return CommandResult(argv=argv, returncode=0)
        if name == "modinfo":
            return CommandResult(
                argv=argv,
                returncode=0,
                stdout=(
                    f"filename:       {argv[1]}\n"
                    "license:        GPL v2\n"
                    f"vermagic:       {self.running} SMP preempt mod_unload\n"
                    "sig_id:         PKCS#7\n"
                    f"signer:         {COMMON_NAME}\n"
                    "sig_key:        1A:2B:3C\n"
                    "sig_hashalgo:   sha256\n"
                    "signature:      AA:BB:CC:\n"
                    "\t\tDD:EE:FF\n"
                ),
            )
        return CommandResult(argv=argv, returncode=0)

    def _mokutil(self, argv: List[str]) -> CommandResult:
        flag = argv[1]
        if flag == "--sb-state":
            if self.sb_state is None:
                return CommandResult(argv=argv, returncode=1, stderr="EFI variables are not supported")
            return CommandResult(argv=argv, returncode=0, stdout=self.sb_state)
        if flag == "--list-enrolled":
            return CommandResult(argv=argv, returncode=0, stdout=self.enrolled)
        if flag == "--list-new":
            return CommandResult(argv=argv, returncode=0 if "CN=" in self.pending else 1, stdout=self.pending)
        if flag == "--import":
            self.pending = f"[key 1]\nSubject: CN={COMMON_NAME}\n"
            return CommandResult(argv=argv, returncode=0)
        return CommandResult(argv=argv, returncode=0)

    # ------------------------------------------------------------------

    def which(self, name: str) -> Optional[str]:
        return f"/usr/bin/{name}" if name in self.tools else None

    def running_kernel(self) -> str:
        return self.running

    def is_privileged(self) -> bool:
        return self.privileged


# ============================================================================
# Host helpers
# ============================================================================

def install_kernel(layout: HostLayout, kernel_version: str, modules=("vmmon", "vmnet"), signer=True):
    """Create a kernel's module tree, its managed modules and (optionally) its sign-file."""
    misc = layout.modules_root / kernel_version / "misc"
    misc.mkdir(parents=True, exist_ok=True)
    for module in modules:
        (misc / f"{module}.ko").write_bytes(module_bytes(module, kernel_version))
    if signer:
        install_signer(layout, kernel_version)
    return misc


def install_signer(layout: HostLayout, kernel_version: str) -> Path:
    signer = layout.headers_root / f"linux-headers-{kernel_version}" / "scripts" / "sign-file"
    signer.parent.mkdir(parents=True, exist_ok=True)
    signer.write_text("#!/bin/sh\nexit 0\n")
    signer.chmod(0o755)
    return signer


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def layout(tmp_path) -> HostLayout:
    return HostLayout(
        key_dir=tmp_path / "root" / "vmware-signing",
        modules_root=tmp_path / "lib" / "modules",
        headers_root=tmp_path / "usr" / "src",
        autoload_conf=tmp_path / "etc" / "modules-load.d" / "vmware.conf",
        hook_path=tmp_path / "etc" / "kernel" / "postinst.d" / "zz-vmware-sign",
        init_script=tmp_path / "etc" / "init.d" / "vmware",
        efivars_dir=tmp_path / "sys" / "firmware" / "efi" / "efivars",
        modules=("vmmon", "vmnet"),
        common_name=COMMON_NAME,
        key_bits=2048,
        cert_days=36500,
    )


@pytest.fixture
def runner(layout) -> FakeRunner:
    return FakeRunner(layout)
