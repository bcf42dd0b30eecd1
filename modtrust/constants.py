"""
modtrust Constants

This module is the SINGLE SOURCE OF TRUTH for fixed values shared by the
identity store, the trust prober, the artifact pipeline and the update hook.

Values here define the on-host contracts (file names, signing algorithm,
EFI variable GUIDs). Anything an operator may reasonably relocate lives in
modtrust/config.py instead.
"""

# =============================================================================
# SIGNING IDENTITY
# =============================================================================

# Distinguishing name carried by the self-signed MOK certificate.
# The trust prober matches enrolled keys by this name.
DEFAULT_COMMON_NAME = "VMware Kernel Module Signing"

# File names inside the key directory
PRIVATE_KEY_FILENAME = "MOK.priv"
CERTIFICATE_FILENAME = "MOK.der"

# RSA modulus size; 3072 and 4096 are accepted as well
DEFAULT_KEY_BITS = 2048
ALLOWED_KEY_BITS = (2048, 3072, 4096)

# ~100 years, matches `openssl req -days 36500`
DEFAULT_CERT_DAYS = 36500

# Trust material must never be readable by group or others
KEY_DIR_MODE = 0o700
KEY_FILE_MODE = 0o600


# =============================================================================
# MODULE SIGNING
# =============================================================================

# Digest handed to scripts/sign-file
SIGN_DIGEST = "sha256"

# Trailer appended to a signed kernel module (see scripts/sign-file.c)
MODULE_SIGNATURE_MAGIC = b"~Module signature appended~\n"

# Modules managed by default
DEFAULT_MODULES = ("vmmon", "vmnet")

# Subdirectory of /lib/modules/<version> where the build tool installs them
MODULE_SUBDIR = "misc"

# modinfo fields reported after signing
SIGNATURE_INFO_FIELDS = ("signer", "sig_key", "sig_hashalgo", "vermagic")

# Extended key usage restricting a key to kernel module signing
MODULE_SIGNING_EKU_OID = "1.3.6.1.4.1.2312.16.1.2"


# =============================================================================
# EXTERNAL TOOLS
# =============================================================================

MOKUTIL = "mokutil"
BUILD_TOOL = "vmware-modconfig"
BUILD_COMMAND = (BUILD_TOOL, "--console", "--install-all")
DEPMOD = "depmod"
MODPROBE = "modprobe"
MODINFO = "modinfo"
SYSTEMCTL = "systemctl"
NETWORKS_TOOL = "vmware-networks"

# Environment variable the VMware module Makefiles read for the target kernel
BUILD_KERNEL_ENV = "VM_UNAME"

# Tools that must exist before a full run mutates anything
REQUIRED_TOOLS = (BUILD_TOOL, MOKUTIL)

# Units restarted after the modules are (re)loaded, in order
SERVICE_UNITS = ("vmware-networks.service", "vmware.service")


# =============================================================================
# FIRMWARE
# =============================================================================

# EFI_GLOBAL_VARIABLE vendor GUID (UEFI)
EFI_GLOBAL_VARIABLE_GUID = "8be4df61-93ca-11d2-aa0d-00e098032b8c"
SECURE_BOOT_VARIABLE = f"SecureBoot-{EFI_GLOBAL_VARIABLE_GUID}"

# Printed after `mokutil --import`
ENROLLMENT_STEPS = (
    "Enroll MOK",
    "Continue",
    "Yes",
    "enter the password you just chose",
    "Reboot",
)


# =============================================================================
# UPDATE HOOK
# =============================================================================

# First line written into the hook, used to recognise our own file
HOOK_MARKER = "# Managed by modtrust. Rewritten on every run; local edits are lost."
