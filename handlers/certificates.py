# ================================================================
# File     : handlers/certificates.py
# Purpose  : Self-signed certificate lifecycle for app-only auth
#            (create / find / test / remove)
# Notes    : Material lives as files in the certificate folder:
#              m365roleaudit.key  PEM private key (0600)
#              m365roleaudit.pem  PEM certificate
#              m365roleaudit.cer  DER certificate to upload to the app
# ================================================================

import os
import pathlib
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

from core.utils import fncEnsureFolder, fncPrintMessage

CERT_STEM = "m365roleaudit"
DEFAULT_SUBJECT = "M365RoleAudit App-Only"


class CertificateError(Exception):
    """Certificate material is missing, unreadable or inconsistent."""


def _paths(cert_dir) -> Dict[str, pathlib.Path]:
    base = pathlib.Path(cert_dir).expanduser()
    return {
        "key": base / f"{CERT_STEM}.key",
        "pem": base / f"{CERT_STEM}.pem",
        "cer": base / f"{CERT_STEM}.cer",
    }


def _thumbprint(cert: x509.Certificate) -> str:
    # Azure AD identifies certificates by SHA-1 thumbprint
    return cert.fingerprint(hashes.SHA1()).hex().upper()


def _info(cert: x509.Certificate, paths: Dict[str, pathlib.Path], now: datetime) -> Dict[str, Any]:
    not_after = cert.not_valid_after_utc
    return {
        "subject": cert.subject.rfc4514_string(),
        "thumbprint": _thumbprint(cert),
        "serialNumber": format(cert.serial_number, "x"),
        "notBefore": cert.not_valid_before_utc.isoformat(),
        "notAfter": not_after.isoformat(),
        "daysRemaining": (not_after - now).days,
        "certificatePath": str(paths["pem"]),
        "keyPath": str(paths["key"]),
        "uploadPath": str(paths["cer"]),
    }


def _load_cert(path: pathlib.Path) -> x509.Certificate:
    try:
        return x509.load_pem_x509_certificate(path.read_bytes())
    except (OSError, ValueError) as ex:
        raise CertificateError(f"Cannot read certificate {path}: {ex}") from ex


def _load_key(path: pathlib.Path):
    try:
        return serialization.load_pem_private_key(path.read_bytes(), password=None)
    except (OSError, ValueError, TypeError) as ex:
        raise CertificateError(f"Cannot read private key {path}: {ex}") from ex


# ================================================================
# Function: fncNewAuditCertificate
# Purpose : Generate an RSA key + self-signed certificate
# Notes   : Refuses to overwrite existing material unless force=True
# ================================================================
def fncNewAuditCertificate(cert_dir, subject: str = DEFAULT_SUBJECT, valid_days: int = 730,
                           key_size: int = 2048, force: bool = False,
                           now: Optional[datetime] = None) -> Dict[str, Any]:
    paths = _paths(cert_dir)
    if not force and any(p.exists() for p in paths.values()):
        raise CertificateError(f"Certificate already exists in {paths['pem'].parent}; remove it or use force")

    now = now or datetime.now(timezone.utc)
    key = rsa.generate_private_key(public_exponent=65537, key_size=key_size)
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, subject)])
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(minutes=5))
        .not_valid_after(now + timedelta(days=valid_days))
        .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
        .add_extension(
            x509.KeyUsage(digital_signature=True, key_encipherment=True, content_commitment=False,
                          data_encipherment=False, key_agreement=False, key_cert_sign=False,
                          crl_sign=False, encipher_only=False, decipher_only=False),
            critical=True,
        )
        .sign(key, hashes.SHA256())
    )

    fncEnsureFolder(paths["pem"].parent)
    paths["key"].write_bytes(key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ))
    os.chmod(paths["key"], 0o600)
    paths["pem"].write_bytes(cert.public_bytes(serialization.Encoding.PEM))
    paths["cer"].write_bytes(cert.public_bytes(serialization.Encoding.DER))

    info = _info(cert, paths, now)
    fncPrintMessage(f"Certificate created: {info['subject']} (thumbprint {info['thumbprint']})", "success")
    fncPrintMessage(f"Upload {paths['cer']} to the app registration under Certificates & secrets.", "info")
    return info


# ================================================================
# Function: fncFindAuditCertificate
# Purpose : Describe the certificate in cert_dir, or None
# ================================================================
def fncFindAuditCertificate(cert_dir, now: Optional[datetime] = None) -> Optional[Dict[str, Any]]:
    paths = _paths(cert_dir)
    if not paths["pem"].exists():
        fncPrintMessage(f"No certificate found in {paths['pem'].parent}", "debug")
        return None
    return _info(_load_cert(paths["pem"]), paths, now or datetime.now(timezone.utc))


# ================================================================
# Function: fncRemoveAuditCertificate
# Purpose : Delete key, PEM and DER files
# Notes   : Returns True when anything was removed
# ================================================================
def fncRemoveAuditCertificate(cert_dir) -> bool:
    removed = False
    for p in _paths(cert_dir).values():
        if p.exists():
            p.unlink()
            removed = True
    if removed:
        fncPrintMessage(f"Certificate material removed from {pathlib.Path(cert_dir).expanduser()}", "success")
        fncPrintMessage("Also delete the certificate from the app registration.", "warn")
    else:
        fncPrintMessage("No certificate material to remove.", "warn")
    return removed


# ================================================================
# Function: fncTestAuditCertificate
# Purpose : Check the certificate is usable for app-only auth
# Notes   : Reports problems; never raises for bad material
# ================================================================
def fncTestAuditCertificate(cert_dir, expected_thumbprint: Optional[str] = None,
                            now: Optional[datetime] = None, warn_days: int = 30) -> Dict[str, Any]:
    now = now or datetime.now(timezone.utc)
    paths = _paths(cert_dir)
    result: Dict[str, Any] = {"found": False, "valid": False, "problems": [], "warnings": []}

    if not paths["pem"].exists() or not paths["key"].exists():
        result["problems"].append(f"Certificate or key missing in {paths['pem'].parent}")
        return result
    result["found"] = True

    try:
        cert = _load_cert(paths["pem"])
        key = _load_key(paths["key"])
    except CertificateError as ex:
        result["problems"].append(str(ex))
        return result

    info = _info(cert, paths, now)
    result.update(info)

    if cert.public_key().public_numbers() != key.public_key().public_numbers():
        result["problems"].append("Private key does not match the certificate")
    if now < cert.not_valid_before_utc:
        result["problems"].append("Certificate is not valid yet")
    if now > cert.not_valid_after_utc:
        result["problems"].append(f"Certificate expired on {info['notAfter']}")
    elif info["daysRemaining"] <= warn_days:
        result["warnings"].append(f"Certificate expires in {info['daysRemaining']} days")
    if expected_thumbprint and expected_thumbprint.replace(":", "").upper() != info["thumbprint"]:
        result["problems"].append(
            f"Thumbprint {info['thumbprint']} does not match configured {expected_thumbprint}"
        )

    result["valid"] = not result["problems"]
    for p in result["problems"]:
        fncPrintMessage(p, "error")
    for w in result["warnings"]:
        fncPrintMessage(w, "warn")
    if result["valid"]:
        fncPrintMessage(f"Certificate OK ({info['daysRemaining']} days remaining)", "success")
    return result


# ================================================================
# Function: fncLoadCertificateCredential
# Purpose : MSAL client_credential dict {private_key, thumbprint}
# ================================================================
def fncLoadCertificateCredential(cert_dir) -> Dict[str, str]:
    paths = _paths(cert_dir)
    if not paths["pem"].exists() or not paths["key"].exists():
        raise CertificateError(f"No certificate in {paths['pem'].parent}; run with --cert new first")
    cert = _load_cert(paths["pem"])
    _load_key(paths["key"])
    return {
        "private_key": paths["key"].read_text(encoding="utf-8"),
        "thumbprint": _thumbprint(cert),
    }
