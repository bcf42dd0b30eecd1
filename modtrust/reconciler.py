"""
Reconciler
==========

The trust-and-reconciliation state machine. Every decision is made from what
the host reports right now; nothing is carried over between runs except the
files the OS already keeps (key pair, autoload declaration, module trees).

Full run (operator, as root):

    probe ──► DISABLED ───────────┐
          ├─► ENABLED_ENROLLED ───┼─► identity ─► build/verify/sign/load
          │                       │   ─► autoload ─► services ─► hook
          └─► ENABLED_UNENROLLED ─► identity ─► queue enrollment ─► exit 0
                                    (operator reboots, confirms, reruns)

Hook run (package system, unattended):

    build(V) ─► sign all kernels + depmod ─► autoload ─► services

Re-running either path after any state change converges on the same end
state: every installed kernel's managed modules signed, every managed module
declared for autoload.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, List, Optional

import click

from modtrust.artifacts import ArtifactPipeline, KernelSigningReport, PipelineResult
from modtrust.autoload import ensure_autoload
from modtrust.config import HostLayout, hook_environment
from modtrust.constants import REQUIRED_TOOLS
from modtrust.enrollment import EnrollmentCoordinator, EnrollmentOutcome
from modtrust.errors import ModTrustError
from modtrust.hook import install_hook
from modtrust.host import CommandRunner, require_root, require_tools
from modtrust.identity import IdentityStore, SigningIdentity
from modtrust.services import ServiceAttempt, default_actions, refresh_dependent_services
from modtrust.trust import TrustProber, TrustState

logger = logging.getLogger(__name__)


class RunOutcome(str, Enum):
    COMPLETED = "completed"
    PENDING_REBOOT = "pending_reboot"


@dataclass
class RunReport:
    outcome: RunOutcome
    trust_state: TrustState
    identity: Optional[SigningIdentity] = None
    identity_details: dict = field(default_factory=dict)
    enrollment: Optional[EnrollmentOutcome] = None
    pipeline: Optional[PipelineResult] = None
    autoload_added: List[str] = field(default_factory=list)
    services: List[ServiceAttempt] = field(default_factory=list)
    signatures: List[dict] = field(default_factory=list)
    hook_path: Optional[Path] = None


@dataclass
class HookReport:
    kernel_version: str
    built: bool = False
    identity_present: bool = False
    missing: List[str] = field(default_factory=list)
    signing: List[KernelSigningReport] = field(default_factory=list)
    autoload_added: List[str] = field(default_factory=list)
    services: List[ServiceAttempt] = field(default_factory=list)


class Reconciler:
    def __init__(
        self,
        layout: HostLayout,
        runner: Optional[CommandRunner] = None,
        confirm: Optional[Callable[[str], bool]] = None,
        echo: Callable[..., None] = click.echo,
        hook_python: Optional[str] = None,
    ):
        self.layout = layout
        self.runner = runner or CommandRunner()
        self.echo = echo
        self.hook_python = hook_python

        self.identity_store = IdentityStore(layout)
        self.prober = TrustProber(self.runner, layout.efivars_dir)
        self.enrollment = EnrollmentCoordinator(self.runner, self.prober, confirm=confirm, echo=echo)
        self.pipeline = ArtifactPipeline(self.runner, layout)
        self.service_actions = default_actions(self.runner, layout.init_script)

    def _stage(self, message: str):
        self.echo(f"[*] {message}")

    def check_preconditions(self):
        """
        Raises:
            PreconditionError: not root, or a required tool is missing
        """
        require_root(self.runner)
        require_tools(self.runner, REQUIRED_TOOLS)

    # ========================================================================
    # Full run
    # ========================================================================

    def run(self) -> RunReport:
        """
        Reconcile the host end to end.

        Raises:
            PreconditionError: before any mutation
            EnrollmentError: the certificate could not be queued
            PipelineIntegrityError: a managed module is missing for the running kernel
        """
        self.check_preconditions()

        existing = self.identity_store.load_identity()
        common_name = existing.common_name if existing else self.layout.common_name

        self._stage("Probing Secure Boot state...")
        state = self.prober.probe(common_name)
        report = RunReport(outcome=RunOutcome.COMPLETED, trust_state=state)

        if state == TrustState.ENABLED_UNENROLLED:
            self._stage(f"Preparing signing key in {self.layout.key_dir}")
            report.identity = self.identity_store.ensure_identity()
            report.identity_details = self.identity_store.describe_identity(report.identity)
            self._stage(f"MOK '{report.identity.common_name}' is not enrolled")
            report.enrollment = self.enrollment.request_enrollment(report.identity)
            report.outcome = RunOutcome.PENDING_REBOOT
            return report

        if state == TrustState.ENABLED_ENROLLED:
            self._stage(f"MOK '{common_name}' appears enrolled")
        else:
            self._stage("Secure Boot disabled; proceeding (signing still configured)")

        self._stage(f"Preparing signing key in {self.layout.key_dir}")
        report.identity = self.identity_store.ensure_identity()
        report.identity_details = self.identity_store.describe_identity(report.identity)

        kernel_version = self.runner.running_kernel()
        self._stage(f"Rebuilding, verifying and signing modules (running kernel {kernel_version})")
        report.pipeline = self.pipeline.reconcile(kernel_version, report.identity)

        self._stage(f"Ensuring {', '.join(self.layout.modules)} autoload at boot")
        report.autoload_added = ensure_autoload(self.layout.autoload_conf, self.layout.modules)

        self._stage("Restarting dependent services")
        report.services = refresh_dependent_services(self.runner, self.service_actions)

        self._stage(f"Verifying signatures for kernel {kernel_version}")
        report.signatures = self.pipeline.signature_report(kernel_version)

        self._stage(f"Installing kernel postinst hook at {self.layout.hook_path}")
        report.hook_path = install_hook(
            self.layout.hook_path,
            python=self.hook_python,
            environment=hook_environment(self.layout),
        )

        return report

    # ========================================================================
    # Hook run
    # ========================================================================

    def run_hook(self, kernel_version: Optional[str] = None) -> HookReport:
        """
        Unattended reconciliation after a kernel install.

        Never enrolls, never generates keys, never prompts. When any managed
        module is missing for kernel_version, none of that kernel's modules are
        signed; other kernels are still signed.
        """
        kernel_version = kernel_version or self.runner.running_kernel()
        report = HookReport(kernel_version=kernel_version)

        if not self.runner.is_privileged():
            logger.error("❌ Hook must run as root; nothing done")
            return report

        report.built = self.pipeline.build(kernel_version)
        report.missing = [a.module for a in self.pipeline.artifacts_for(kernel_version) if not a.exists]
        if report.missing:
            logger.warning(
                f"⚠️  {kernel_version}: {', '.join(report.missing)} not built; "
                "its modules stay unsigned until the next successful build"
            )

        try:
            identity = self.identity_store.load_identity()
        except ModTrustError as e:
            logger.error(f"❌ {e}")
            identity = None

        if identity is None:
            logger.warning(
                f"⚠️  No signing key in {self.layout.key_dir}; run modtrust once to create it"
            )
        else:
            report.identity_present = True
            skip = [kernel_version] if report.missing else []
            report.signing = self.pipeline.sign_all_kernels(identity, skip=skip)

        try:
            report.autoload_added = ensure_autoload(self.layout.autoload_conf, self.layout.modules)
        except OSError as e:
            logger.warning(f"⚠️  Cannot update {self.layout.autoload_conf}: {e}")

        report.services = refresh_dependent_services(self.runner, self.service_actions)
        return report
