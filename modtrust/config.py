"""
modtrust Configuration
======================

Loads host settings from the environment.

Environment variables may be placed in /etc/modtrust/modtrust.env (or the
file named by MODTRUST_ENV_FILE). Every setting has a default that matches a
stock Debian/Ubuntu host running VMware Workstation, so the file is optional.
"""

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Tuple

from dotenv import load_dotenv

from modtrust.constants import (
    ALLOWED_KEY_BITS,
    CERTIFICATE_FILENAME,
    DEFAULT_CERT_DAYS,
    DEFAULT_COMMON_NAME,
    DEFAULT_KEY_BITS,
    DEFAULT_MODULES,
    PRIVATE_KEY_FILENAME,
)

ENV_FILE = os.getenv("MODTRUST_ENV_FILE", "/etc/modtrust/modtrust.env")

# Variables already set in the process environment win over the file
load_dotenv(ENV_FILE, override=False)


def _parse_modules(raw: str) -> Tuple[str, ...]:
    names = [part for part in re.split(r"[\s,]+", raw) if part]
    # Preserve order, drop duplicates
    return tuple(dict.fromkeys(names))


def _int_setting(name: str, default: int) -> Optional[int]:
    """None when the variable is set but not an integer; validate_config reports it."""
    try:
        return int(os.getenv(name, str(default)))
    except ValueError:
        return None


# ============================================================
# Signing Identity
# ============================================================
DEFAULT_KEY_DIR = "/root/vmware-signing"

KEY_DIR = os.getenv("MODTRUST_KEY_DIR", DEFAULT_KEY_DIR)
COMMON_NAME = os.getenv("MODTRUST_COMMON_NAME", DEFAULT_COMMON_NAME)
KEY_BITS = _int_setting("MODTRUST_KEY_BITS", DEFAULT_KEY_BITS)
CERT_DAYS = _int_setting("MODTRUST_CERT_DAYS", DEFAULT_CERT_DAYS)

# ============================================================
# Managed Modules
# ============================================================
DEFAULT_MODULES_ROOT = "/lib/modules"
DEFAULT_HEADERS_ROOT = "/usr/src"

MODULES = _parse_modules(os.getenv("MODTRUST_MODULES", ",".join(DEFAULT_MODULES)))
MODULES_ROOT = os.getenv("MODTRUST_MODULES_ROOT", DEFAULT_MODULES_ROOT)
HEADERS_ROOT = os.getenv("MODTRUST_HEADERS_ROOT", DEFAULT_HEADERS_ROOT)

# ============================================================
# Host Integration
# ============================================================
DEFAULT_AUTOLOAD_CONF = "/etc/modules-load.d/vmware.conf"
DEFAULT_HOOK_PATH = "/etc/kernel/postinst.d/zz-vmware-sign"
DEFAULT_INIT_SCRIPT = "/etc/init.d/vmware"
DEFAULT_EFIVARS_DIR = "/sys/firmware/efi/efivars"

AUTOLOAD_CONF = os.getenv("MODTRUST_AUTOLOAD_CONF", DEFAULT_AUTOLOAD_CONF)
HOOK_PATH = os.getenv("MODTRUST_HOOK_PATH", DEFAULT_HOOK_PATH)
INIT_SCRIPT = os.getenv("MODTRUST_INIT_SCRIPT", DEFAULT_INIT_SCRIPT)
EFIVARS_DIR = os.getenv("MODTRUST_EFIVARS_DIR", DEFAULT_EFIVARS_DIR)

# Environment variable, HostLayout field and default, in the order the hook exports them
SETTINGS = (
    ("MODTRUST_KEY_DIR", "key_dir", DEFAULT_KEY_DIR),
    ("MODTRUST_COMMON_NAME", "common_name", DEFAULT_COMMON_NAME),
    ("MODTRUST_KEY_BITS", "key_bits", str(DEFAULT_KEY_BITS)),
    ("MODTRUST_CERT_DAYS", "cert_days", str(DEFAULT_CERT_DAYS)),
    ("MODTRUST_MODULES", "modules", ",".join(DEFAULT_MODULES)),
    ("MODTRUST_MODULES_ROOT", "modules_root", DEFAULT_MODULES_ROOT),
    ("MODTRUST_HEADERS_ROOT", "headers_root", DEFAULT_HEADERS_ROOT),
    ("MODTRUST_AUTOLOAD_CONF", "autoload_conf", DEFAULT_AUTOLOAD_CONF),
    ("MODTRUST_HOOK_PATH", "hook_path", DEFAULT_HOOK_PATH),
    ("MODTRUST_INIT_SCRIPT", "init_script", DEFAULT_INIT_SCRIPT),
    ("MODTRUST_EFIVARS_DIR", "efivars_dir", DEFAULT_EFIVARS_DIR),
)


@dataclass(frozen=True)
class HostLayout:
    """Where modtrust reads and writes host state, plus the identity parameters."""

    key_dir: Path = field(default_factory=lambda: Path(KEY_DIR))
    modules_root: Path = field(default_factory=lambda: Path(MODULES_ROOT))
    headers_root: Path = field(default_factory=lambda: Path(HEADERS_ROOT))
    autoload_conf: Path = field(default_factory=lambda: Path(AUTOLOAD_CONF))
    hook_path: Path = field(default_factory=lambda: Path(HOOK_PATH))
    init_script: Path = field(default_factory=lambda: Path(INIT_SCRIPT))
    efivars_dir: Path = field(default_factory=lambda: Path(EFIVARS_DIR))
    modules: Tuple[str, ...] = MODULES
    common_name: str = COMMON_NAME
    key_bits: Optional[int] = KEY_BITS
    cert_days: Optional[int] = CERT_DAYS

    @property
    def private_key_path(self) -> Path:
        return self.key_dir / PRIVATE_KEY_FILENAME

    @property
    def certificate_path(self) -> Path:
        return self.key_dir / CERTIFICATE_FILENAME


def validate_config(layout: HostLayout) -> bool:
    """
    Validates the settings a run depends on.
    Called by the CLI before anything touches the host.

    Raises:
        ValueError: listing every problem found
    """
    errors = []

    if not layout.modules:
        errors.append("MODTRUST_MODULES is empty")
    for name in layout.modules:
        if not re.fullmatch(r"[A-Za-z0-9_\-]+", name):
            errors.append(f"invalid module name: {name!r}")

    if layout.key_bits is None:
        errors.append(f"MODTRUST_KEY_BITS must be an integer (got {os.getenv('MODTRUST_KEY_BITS')!r})")
    elif layout.key_bits not in ALLOWED_KEY_BITS:
        allowed = ", ".join(str(bits) for bits in ALLOWED_KEY_BITS)
        errors.append(f"MODTRUST_KEY_BITS must be one of {allowed} (got {layout.key_bits})")
    if layout.cert_days is None:
        errors.append(f"MODTRUST_CERT_DAYS must be an integer (got {os.getenv('MODTRUST_CERT_DAYS')!r})")
    elif layout.cert_days <= 0:
        errors.append(f"MODTRUST_CERT_DAYS must be positive (got {layout.cert_days})")
    if not layout.common_name.strip():
        errors.append("MODTRUST_COMMON_NAME is empty")

    if errors:
        raise ValueError("Configuration errors:\n" + "\n".join(f"  - {e}" for e in errors))

    return True


def hook_environment(layout: HostLayout) -> List[Tuple[str, str]]:
    """
    MODTRUST_* assignments that reproduce layout when the package system runs
    the kernel hook with a clean environment.

    Always includes MODTRUST_ENV_FILE, then every setting that differs from its
    built-in default, in SETTINGS order.
    """
    assignments = [("MODTRUST_ENV_FILE", ENV_FILE)]
    for variable, attribute, default in SETTINGS:
        value = getattr(layout, attribute)
        if isinstance(value, tuple):
            value = ",".join(value)
        value = str(value)
        if value != default:
            assignments.append((variable, value))
    return assignments


def print_config_summary(layout: HostLayout):
    """
    Prints a summary of the configuration (for debugging).
    Never prints key material.
    """
    print("=" * 60)
    print("modtrust Configuration Summary")
    print("=" * 60)
    print(f"Env file: {ENV_FILE}")
    print(f"Key directory: {layout.key_dir}")
    print(f"Common name: {layout.common_name}")
    print(f"Key: RSA-{layout.key_bits}, {layout.cert_days} days")
    print(f"Modules: {', '.join(layout.modules)}")
    print(f"Modules root: {layout.modules_root}")
    print(f"Headers root: {layout.headers_root}")
    print(f"Autoload declaration: {layout.autoload_conf}")
    print(f"Update hook: {layout.hook_path}")
    print("=" * 60)
