"""
Signing Identity Store
======================

Owns the Machine Owner Key (MOK) used to sign the managed kernel modules.

SECURITY MODEL:
- The key pair is generated ONCE and never regenerated while both files exist.
  Regenerating would silently invalidate the enrollment the operator
  confirmed in firmware.
- The key directory is 0700 and both files are 0600. If the directory cannot
  be secured the run aborts before anything is written.
- Key and certificate are written under temporary names and renamed into
  place, so the final names only ever hold a complete pair.

ON-DISK FORMAT (what scripts/sign-file and mokutil expect):
    MOK.priv  - RSA private key, unencrypted PKCS#8 PEM
    MOK.der   - self-signed X.509 certificate, DER
"""

import logging
import os
import stat
import tempfile
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

from modtrust.config import HostLayout
from modtrust.constants import KEY_DIR_MODE, KEY_FILE_MODE, MODULE_SIGNING_EKU_OID
from modtrust.errors import PreconditionError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SigningIdentity:
    """Paths of an existing MOK pair and the name it was issued under."""
    private_key_path: Path
    certificate_path: Path
    common_name: str
    created: bool = False


def _get_cert_not_valid_after(cert) -> datetime:
    """Get certificate not_valid_after, compatible with old and new cryptography versions."""
    if hasattr(cert, "not_valid_after_utc"):
        return cert.not_valid_after_utc
    nva = cert.not_valid_after
    if nva.tzinfo is None:
        return nva.replace(tzinfo=timezone.utc)
    return nva


def _common_name_of(cert: x509.Certificate) -> Optional[str]:
    attrs = cert.subject.get_attributes_for_oid(NameOID.COMMON_NAME)
    return attrs[0].value if attrs else None


class IdentityStore:
    """Creates and reads the MOK pair under layout.key_dir."""

    def __init__(self, layout: HostLayout):
        self.layout = layout

    # ========================================================================
    # Lookup
    # ========================================================================

    def _load_certificate(self) -> x509.Certificate:
        data = self.layout.certificate_path.read_bytes()
        try:
            return x509.load_der_x509_certificate(data)
        except ValueError as e:
            raise PreconditionError(
                f"{self.layout.certificate_path} is not a DER certificate ({e}). "
                "Move the key directory aside to generate a new identity."
            )

    def load_identity(self) -> Optional[SigningIdentity]:
        """
        Return the existing identity, or None unless BOTH files are present.

        Never generates anything; the update hook relies on this.
        """
        key_path = self.layout.private_key_path
        cert_path = self.layout.certificate_path
        if not (key_path.is_file() and cert_path.is_file()):
            return None

        common_name = _common_name_of(self._load_certificate()) or self.layout.common_name
        return SigningIdentity(
            private_key_path=key_path,
            certificate_path=cert_path,
            common_name=common_name,
        )

    def describe_identity(self, identity: SigningIdentity) -> dict:
        """Subject, serial, fingerprint and expiry for operator output."""
        cert = self._load_certificate()
        return {
            "common_name": identity.common_name,
            "serial": format(cert.serial_number, "x"),
            "sha256_fingerprint": cert.fingerprint(hashes.SHA256()).hex(),
            "not_valid_after": _get_cert_not_valid_after(cert).strftime("%Y-%m-%dT%H:%M:%SZ"),
            "certificate_path": str(identity.certificate_path),
        }

    # ========================================================================
    # Creation
    # ========================================================================

    def ensure_identity(self) -> SigningIdentity:
        """
        Return the MOK pair, generating it only if either file is missing.

        Raises:
            PreconditionError: key directory cannot be created or secured
        """
        self._secure_directory()

        existing = self.load_identity()
        if existing is not None:
            self._tighten_file_mode(existing.private_key_path)
            logger.info(f"🔑 Using existing key at {self.layout.key_dir}")
            return existing

        logger.info(
            f"🔑 Generating MOK key (RSA-{self.layout.key_bits}) "
            f"for CN={self.layout.common_name}"
        )
        key_pem, cert_der = self._generate(self.layout.common_name)
        self._install_pair(key_pem, cert_der)
        logger.info(f"✅ Key created at {self.layout.key_dir}")

        return SigningIdentity(
            private_key_path=self.layout.private_key_path,
            certificate_path=self.layout.certificate_path,
            common_name=self.layout.common_name,
            created=True,
        )

    def _secure_directory(self):
        key_dir = self.layout.key_dir
        try:
            key_dir.mkdir(mode=KEY_DIR_MODE, parents=True, exist_ok=True)
            os.chmod(key_dir, KEY_DIR_MODE)
            if os.geteuid() == 0:
                os.chown(key_dir, 0, 0)
        except OSError as e:
            raise PreconditionError(f"Cannot prepare key directory {key_dir}: {e}")

        mode = stat.S_IMODE(key_dir.stat().st_mode)
        if mode & 0o077:
            raise PreconditionError(
                f"Key directory {key_dir} is accessible to group/others (mode {mode:o})"
            )

    def _tighten_file_mode(self, path: Path):
        mode = stat.S_IMODE(path.stat().st_mode)
        if mode & 0o077:
            logger.warning(f"⚠️  {path} had mode {mode:o}; restricting to {KEY_FILE_MODE:o}")
            os.chmod(path, KEY_FILE_MODE)

    def _generate(self, common_name: str):
        key = rsa.generate_private_key(public_exponent=65537, key_size=self.layout.key_bits)
        public_key = key.public_key()
        name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
        now = datetime.now(timezone.utc)

        cert = (
            x509.CertificateBuilder()
            .subject_name(name)
            .issuer_name(name)
            .public_key(public_key)
            .serial_number(x509.random_serial_number())
            .not_valid_before(now)
            .not_valid_after(now + timedelta(days=self.layout.cert_days))
            .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
            .add_extension(
                x509.KeyUsage(
                    digital_signature=True,
                    content_commitment=False,
                    key_encipherment=False,
                    data_encipherment=False,
                    key_agreement=False,
                    key_cert_sign=False,
                    crl_sign=False,
                    encipher_only=False,
                    decipher_only=False,
                ),
                critical=True,
            )
            .add_extension(
                x509.ExtendedKeyUsage([
                    ExtendedKeyUsageOID.CODE_SIGNING,
                    x509.ObjectIdentifier(MODULE_SIGNING_EKU_OID),
                ]),
                critical=False,
            )
            .add_extension(x509.SubjectKeyIdentifier.from_public_key(public_key), critical=False)
            .add_extension(
                x509.AuthorityKeyIdentifier.from_issuer_public_key(public_key), critical=False
            )
            .sign(key, hashes.SHA256())
        )

        key_pem = key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        )
        cert_der = cert.public_bytes(serialization.Encoding.DER)
        return key_pem, cert_der

    def _write_temp(self, data: bytes, suffix: str) -> str:
        # mkstemp creates the file 0600 before any byte is written
        fd, tmp_path = tempfile.mkstemp(dir=self.layout.key_dir, prefix=".MOK.", suffix=suffix)
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.chmod(tmp_path, KEY_FILE_MODE)
        return tmp_path

    def _install_pair(self, key_pem: bytes, cert_der: bytes):
        tmp_key = self._write_temp(key_pem, ".priv")
        try:
            tmp_cert = self._write_temp(cert_der, ".der")
        except OSError:
            os.unlink(tmp_key)
            raise
        # Key first: a certificate under the final name implies its key is there
        os.replace(tmp_key, self.layout.private_key_path)
        os.replace(tmp_cert, self.layout.certificate_path)
