"""
CLI for modtrust
================

Commands:
    modtrust                                   Reconcile this host (run as root)
    modtrust-hook [KERNEL_VERSION] [IMAGE]     Unattended kernel postinst routine

`modtrust` has no subcommands: what it does is decided entirely by the host's
Secure Boot state. Exit status is 0 on success and when a reboot is pending
for MOK enrollment, 1 on any fatal error.
"""

import logging
import sys
from typing import Optional

import click

from modtrust import __version__
from modtrust.config import HostLayout, print_config_summary, validate_config
from modtrust.errors import ModTrustError
from modtrust.reconciler import Reconciler, RunOutcome, RunReport

logger = logging.getLogger(__name__)


def _configure_logging(verbose: bool):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s | %(levelname)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def _confirm_reboot(prompt: str) -> bool:
    return click.confirm(prompt, default=True)


@click.command()
@click.version_option(version=__version__)
@click.option("--verbose", "-v", is_flag=True, help="Log every external command")
@click.option("--show-config", is_flag=True, help="Print the effective configuration and exit")
def main(verbose: bool, show_config: bool):
    """
    Keep VMware kernel modules signed for Secure Boot.

    Creates the Machine Owner Key on first use, queues it for enrollment when
    Secure Boot is on, then rebuilds, signs (for every installed kernel),
    registers and loads the modules, restarts VMware networking and installs
    a kernel postinst hook that repeats this after every kernel upgrade.

    Examples:
        sudo modtrust
        sudo modtrust --show-config
    """
    _configure_logging(verbose)
    layout = HostLayout()

    try:
        validate_config(layout)
    except ValueError as e:
        click.echo(f"❌ {e}", err=True)
        sys.exit(1)

    if show_config:
        print_config_summary(layout)
        return

    confirm = _confirm_reboot if sys.stdin.isatty() else None
    reconciler = Reconciler(layout, confirm=confirm)

    try:
        report = reconciler.run()
    except ModTrustError as e:
        click.echo()
        click.echo(f"❌ {e}", err=True)
        click.echo()
        sys.exit(1)

    if report.outcome == RunOutcome.PENDING_REBOOT:
        _display_identity(report.identity_details)
        click.echo("⏸  Stopping here until the key is enrolled.")
        return

    _display_summary(report)


def _display_identity(details: dict):
    """Certificate facts the operator can match against the MOK Manager screen."""
    if not details:
        return
    click.echo(f"🔑 MOK: CN={details['common_name']}")
    click.echo(f"   Serial: {details['serial']}")
    click.echo(f"   SHA-256: {details['sha256_fingerprint']}")
    click.echo(f"   Expires: {details['not_valid_after']}")
    click.echo(f"   Certificate: {details['certificate_path']}")
    click.echo()


def _display_summary(report: RunReport):
    click.echo()
    click.echo("=" * 70)
    click.echo(f"✅ Done (Secure Boot: {report.trust_state.value})")
    click.echo("=" * 70)
    _display_identity(report.identity_details)

    for entry in report.signatures:
        status = "signed" if entry["signed"] else ("UNSIGNED" if entry["present"] else "MISSING")
        click.echo(f"---- {entry['path']}: {status}")
        for name, value in entry["modinfo"].items():
            click.echo(f"     {name}: {value}")

    if report.pipeline is not None:
        for kernel in report.pipeline.signing:
            if kernel.skipped:
                continue
            line = f"  {kernel.kernel_version}: signed {', '.join(kernel.signed) or 'nothing'}"
            if kernel.failed:
                line += f"; FAILED {', '.join(kernel.failed)}"
            click.echo(line)

        for module, ok in report.pipeline.loaded.items():
            if not ok:
                click.echo(f"⚠️  {module} did not load; check `dmesg` before rebooting")

    if report.autoload_added:
        click.echo(f"  Autoload: added {', '.join(report.autoload_added)}")
    click.echo(f"  Hook: {report.hook_path}")
    click.echo()
    click.echo("   • VMware networking (vmnet8) should be available now.")
    click.echo()


@click.command()
@click.argument("kernel_version", required=False)
@click.argument("image_path", required=False)
@click.option("--verbose", "-v", is_flag=True, help="Log every external command")
def hook_main(kernel_version: Optional[str], image_path: Optional[str], verbose: bool):
    """
    Rebuild and re-sign the managed modules after a kernel install.

    Called by the package system from /etc/kernel/postinst.d with the new
    kernel version (and image path). Falls back to the running kernel.
    Always exits 0 so a module problem never aborts a kernel upgrade.
    """
    _configure_logging(verbose)
    try:
        layout = HostLayout()
        validate_config(layout)
    except ValueError as e:
        logger.error(f"❌ {e}; kernel installation continues")
        return
    except Exception:
        logger.exception("❌ modtrust hook failed; kernel installation continues")
        return

    try:
        report = Reconciler(layout, confirm=None).run_hook(kernel_version)
    except Exception:
        logger.exception("❌ modtrust hook failed; kernel installation continues")
        return

    signed = sum(len(k.signed) for k in report.signing)
    logger.info(f"modtrust hook for {report.kernel_version}: {signed} module(s) signed")


if __name__ == "__main__":
    main()
