"""
Artifact Pipeline
=================

Keeps the managed kernel modules built, present, signed and loaded.

For a target kernel version V, reconcile(V):
    1. runs the external build tool for V (best effort)
    2. requires every managed module under <modules_root>/V/misc/
       (missing => PipelineIntegrityError, nothing is signed for V)
    3. signs every managed module of EVERY installed kernel that has a signer
    4. refreshes each signed kernel's module dependency index (depmod)
    5. loads the modules, when V is the running kernel

Signing replaces any previously appended signature instead of stacking a new
one on top, so repeated runs leave byte-stable modules. The signed copy is
produced next to the module and renamed over it; a failed signer leaves the
original file untouched.

There is deliberately NO fallback that searches build directories for stray
.ko files: an artifact that is not where the build tool installs it is a
failure, never something to copy into /lib/modules.
"""

import logging
import os
import shutil
import struct
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from modtrust.config import HostLayout
from modtrust.constants import (
    BUILD_COMMAND,
    BUILD_KERNEL_ENV,
    BUILD_TOOL,
    DEPMOD,
    MODINFO,
    MODPROBE,
    MODULE_SIGNATURE_MAGIC,
    MODULE_SUBDIR,
    SIGN_DIGEST,
    SIGNATURE_INFO_FIELDS,
)
from modtrust.errors import PipelineIntegrityError
from modtrust.host import CommandRunner
from modtrust.identity import SigningIdentity

logger = logging.getLogger(__name__)

# struct module_signature: algo, hash, id_type, signer_len, key_id_len, pad[3], be32 sig_len
_SIGNATURE_INFO = struct.Struct(">BBBBB3xI")


# ============================================================================
# Appended signature handling
# ============================================================================

def strip_appended_signatures(data: bytes) -> bytes:
    """
    Remove every module signature appended to data.

    Layout of a signed module:
        [module][signature: sig_len bytes][module_signature: 12 bytes][magic]

    Raises:
        ValueError: trailer present but inconsistent
    """
    magic_len = len(MODULE_SIGNATURE_MAGIC)
    while data.endswith(MODULE_SIGNATURE_MAGIC):
        info_end = len(data) - magic_len
        info_start = info_end - _SIGNATURE_INFO.size
        if info_start < 0:
            raise ValueError("truncated module signature trailer")
        sig_len = _SIGNATURE_INFO.unpack(data[info_start:info_end])[-1]
        module_end = info_start - sig_len
        if module_end < 0:
            raise ValueError(f"module signature length {sig_len} exceeds file size")
        data = data[:module_end]
    return data


def has_appended_signature(path: Path) -> bool:
    """Whether the module file ends with the appended-signature magic."""
    magic_len = len(MODULE_SIGNATURE_MAGIC)
    try:
        with open(path, "rb") as f:
            f.seek(0, os.SEEK_END)
            if f.tell() < magic_len:
                return False
            f.seek(-magic_len, os.SEEK_END)
            return f.read(magic_len) == MODULE_SIGNATURE_MAGIC
    except OSError:
        return False


# ============================================================================
# Data model
# ============================================================================

@dataclass(frozen=True)
class ManagedArtifact:
    """One managed module built for one kernel version."""
    module: str
    kernel_version: str
    path: Path

    @property
    def exists(self) -> bool:
        return self.path.is_file()

    @property
    def is_signed(self) -> bool:
        return has_appended_signature(self.path)


@dataclass
class KernelSigningReport:
    kernel_version: str
    signer: Optional[Path] = None
    signed: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    depmod_ok: bool = False

    @property
    def skipped(self) -> bool:
        return self.signer is None


@dataclass
class PipelineResult:
    kernel_version: str
    built: bool
    signing: List[KernelSigningReport] = field(default_factory=list)
    loaded: Dict[str, bool] = field(default_factory=dict)


# ============================================================================
# Pipeline
# ============================================================================

class ArtifactPipeline:
    def __init__(self, runner: CommandRunner, layout: HostLayout):
        self.runner = runner
        self.layout = layout

    def artifact(self, module: str, kernel_version: str) -> ManagedArtifact:
        path = self.layout.modules_root / kernel_version / MODULE_SUBDIR / f"{module}.ko"
        return ManagedArtifact(module=module, kernel_version=kernel_version, path=path)

    def artifacts_for(self, kernel_version: str) -> List[ManagedArtifact]:
        return [self.artifact(m, kernel_version) for m in self.layout.modules]

    def discover_kernel_versions(self) -> List[str]:
        """Every installed kernel version (directory names under modules_root)."""
        root = self.layout.modules_root
        if not root.is_dir():
            return []
        return sorted(entry.name for entry in root.iterdir() if entry.is_dir())

    def find_signer(self, kernel_version: str) -> Optional[Path]:
        candidates = (
            self.layout.headers_root / f"linux-headers-{kernel_version}" / "scripts" / "sign-file",
            self.layout.modules_root / kernel_version / "build" / "scripts" / "sign-file",
        )
        for candidate in candidates:
            if self.runner.is_executable(candidate):
                return candidate
        return None

    # ------------------------------------------------------------------
    # Step 1: build
    # ------------------------------------------------------------------

    def build(self, kernel_version: str) -> bool:
        """Run the module build tool for kernel_version. Failures are not fatal."""
        if self.runner.which(BUILD_TOOL) is None:
            logger.warning(f"⚠️  {BUILD_TOOL} not found; skipping build for {kernel_version}")
            return False

        logger.info(f"🔨 Rebuilding modules for kernel {kernel_version}...")
        result = self.runner.run(BUILD_COMMAND, env={BUILD_KERNEL_ENV: kernel_version})
        if not result.ok:
            tail = (result.stderr or result.stdout).strip().splitlines()[-5:]
            logger.warning(
                f"⚠️  {BUILD_TOOL} exited {result.returncode} for {kernel_version}: "
                + " | ".join(tail)
            )
            return False
        return True

    # ------------------------------------------------------------------
    # Step 2: presence
    # ------------------------------------------------------------------

    def verify_presence(self, kernel_version: str) -> List[ManagedArtifact]:
        """
        Require every managed module for kernel_version.

        Raises:
            PipelineIntegrityError: listing the missing modules
        """
        artifacts = self.artifacts_for(kernel_version)
        missing = [a.module for a in artifacts if not a.exists]
        if missing:
            raise PipelineIntegrityError(kernel_version, missing)
        return artifacts

    # ------------------------------------------------------------------
    # Steps 3 and 4: sign + depmod
    # ------------------------------------------------------------------

    def sign_artifact(self, artifact: ManagedArtifact, signer: Path, identity: SigningIdentity) -> bool:
        """Replace artifact's signature with one made by identity. Returns success."""
        try:
            unsigned = strip_appended_signatures(artifact.path.read_bytes())
        except (OSError, ValueError) as e:
            logger.warning(f"⚠️  Cannot read {artifact.path}: {e}")
            return False

        fd, tmp_path = tempfile.mkstemp(
            dir=artifact.path.parent, prefix=f".{artifact.module}.", suffix=".ko"
        )
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(unsigned)
            shutil.copymode(artifact.path, tmp_path)

            result = self.runner.run([
                signer,
                SIGN_DIGEST,
                identity.private_key_path,
                identity.certificate_path,
                tmp_path,
            ])
            if not result.ok or not has_appended_signature(Path(tmp_path)):
                logger.warning(
                    f"⚠️  Signing {artifact.path} failed (exit {result.returncode}): "
                    f"{result.stderr.strip()}"
                )
                return False

            os.replace(tmp_path, artifact.path)
            return True
        finally:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)

    def sign_kernel(self, kernel_version: str, identity: SigningIdentity) -> KernelSigningReport:
        report = KernelSigningReport(kernel_version=kernel_version)

        if not (self.layout.modules_root / kernel_version / MODULE_SUBDIR).is_dir():
            return report

        report.signer = self.find_signer(kernel_version)
        if report.signer is None:
            logger.info(f"No sign-file for {kernel_version}; leaving its modules as they are")
            return report

        for artifact in self.artifacts_for(kernel_version):
            if not artifact.exists:
                continue
            if self.sign_artifact(artifact, report.signer, identity):
                report.signed.append(artifact.module)
            else:
                report.failed.append(artifact.module)

        result = self.runner.run([DEPMOD, "-a", kernel_version])
        report.depmod_ok = result.ok
        if not result.ok:
            logger.warning(f"⚠️  depmod -a {kernel_version} failed: {result.stderr.strip()}")

        if report.signed:
            logger.info(f"✅ {kernel_version}: signed {', '.join(report.signed)}")
        return report

    def sign_all_kernels(
        self, identity: SigningIdentity, skip: Iterable[str] = ()
    ) -> List[KernelSigningReport]:
        """
        Sign the managed modules of every installed kernel, not only the target one.

        Kernels named in skip are left exactly as they are (used for a kernel
        whose module set is incomplete).
        """
        skip = set(skip)
        logger.info("✍️  Signing modules for all installed kernels (where sign-file exists)...")
        reports = []
        for kernel_version in self.discover_kernel_versions():
            if kernel_version in skip:
                logger.warning(f"⚠️  {kernel_version}: module set incomplete; not signing any of it")
                continue
            reports.append(self.sign_kernel(kernel_version, identity))
        return reports

    # ------------------------------------------------------------------
    # Step 5: load
    # ------------------------------------------------------------------

    def load_modules(self) -> Dict[str, bool]:
        """modprobe each managed module into the running kernel. Failures are not fatal."""
        loaded = {}
        for module in self.layout.modules:
            result = self.runner.run([MODPROBE, "-v", module])
            loaded[module] = result.ok
            if not result.ok:
                logger.warning(f"⚠️  modprobe {module} failed: {result.stderr.strip()}")
        return loaded

    # ------------------------------------------------------------------
    # Full reconciliation
    # ------------------------------------------------------------------

    def reconcile(self, kernel_version: str, identity: SigningIdentity) -> PipelineResult:
        """
        Build, verify, sign (all kernels) and load for kernel_version.

        Raises:
            PipelineIntegrityError: a managed module is missing for kernel_version
        """
        built = self.build(kernel_version)

        logger.info(f"🔍 Verifying modules exist for {kernel_version}...")
        self.verify_presence(kernel_version)

        result = PipelineResult(kernel_version=kernel_version, built=built)
        result.signing = self.sign_all_kernels(identity)

        if kernel_version == self.runner.running_kernel():
            logger.info("📦 Loading modules now...")
            result.loaded = self.load_modules()
        return result

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def signature_report(self, kernel_version: str) -> List[dict]:
        """Signature status and modinfo signature fields per managed module."""
        report = []
        for artifact in self.artifacts_for(kernel_version):
            entry = {
                "module": artifact.module,
                "path": str(artifact.path),
                "present": artifact.exists,
                "signed": artifact.is_signed,
                "modinfo": {},
            }
            if artifact.exists:
                result = self.runner.run([MODINFO, artifact.path])
                if result.ok:
                    entry["modinfo"] = _parse_modinfo(result.stdout)
            report.append(entry)
        return report


def _parse_modinfo(output: str) -> Dict[str, str]:
    fields = {}
    current = None
    for line in output.splitlines():
        if ":" in line and not line.startswith((" ", "\t")):
            name, _, value = line.partition(":")
            current = name.strip()
            if current in SIGNATURE_INFO_FIELDS:
                fields[current] = value.strip()
            else:
                current = None
        elif current is not None:
            # Continuation lines of sig_key / signature hex dumps
            fields[current] += line.strip()
    return fields
