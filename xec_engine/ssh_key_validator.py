"""
SSH Key Validator - Pre-flight Checks for SSH Options
======================================================

Cheap, offline checks run before any connection attempt so that a
malformed key or incomplete option set fails with a readable list of
issues instead of an opaque authentication error.

Checks:
- Private keys: PEM / OpenSSH framing, supported type, Base64 body,
  encryption without passphrase
- Public keys: OpenSSH "type base64 [comment]" format
- Key files: readable, not group/world accessible
- Options: host, username, port range, exactly one auth method
"""

import base64
import binascii
import os
import re
import stat
from dataclasses import dataclass, field
from typing import Optional, List, Union, Any

PRIVATE_KEY_PATTERN = re.compile(
    r"^-----BEGIN ((?:[A-Z0-9]+\s+)?PRIVATE KEY)-----\s*\n(.*?)\n\s*-----END \1-----$",
    re.S,
)
PUBLIC_KEY_TYPES = {
    "ssh-rsa": "RSA",
    "ssh-dss": "DSA",
    "ecdsa-sha2-nistp256": "ECDSA",
    "ecdsa-sha2-nistp384": "ECDSA",
    "ecdsa-sha2-nistp521": "ECDSA",
    "ssh-ed25519": "ED25519",
}
SUPPORTED_PRIVATE_TYPES = {"RSA", "DSA", "EC", "OPENSSH"}
MIN_KEY_BODY_LENGTH = 40


@dataclass
class KeyValidationResult:
    is_valid: bool
    key_type: Optional[str] = None
    issues: List[str] = field(default_factory=list)


@dataclass
class PermissionCheckResult:
    is_secure: bool
    issues: List[str] = field(default_factory=list)


@dataclass
class OptionsValidationResult:
    is_valid: bool
    issues: List[str] = field(default_factory=list)


def _is_base64(body: str) -> bool:
    compact = re.sub(r"\s+", "", body)
    if not re.fullmatch(r"[A-Za-z0-9+/]+={0,2}", compact):
        return False
    try:
        base64.b64decode(compact + "=" * (-len(compact) % 4))
    except (binascii.Error, ValueError):
        return False
    return True


def looks_like_key_material(value: Union[str, bytes]) -> bool:
    if isinstance(value, bytes):
        value = value.decode("utf-8", errors="replace")
    return "-----BEGIN" in value


def validate_private_key(key: Union[str, bytes], passphrase: Optional[str] = None) -> KeyValidationResult:
    """Validate private key material (not a path)"""
    if isinstance(key, bytes):
        key = key.decode("utf-8", errors="replace")

    text = key.replace("\r\n", "\n").strip()
    if not text:
        return KeyValidationResult(False, issues=["SSH key is empty"])

    match = PRIVATE_KEY_PATTERN.match(text)
    if not match:
        return KeyValidationResult(
            False, issues=["Invalid SSH private key format. Expected PEM or OpenSSH format"]
        )

    label = match.group(1)
    key_type = label.replace("PRIVATE KEY", "").strip() or "PKCS8"
    body = match.group(2)
    issues: List[str] = []

    if key_type not in SUPPORTED_PRIVATE_TYPES and key_type not in ("PKCS8", "ENCRYPTED"):
        issues.append(f"Unsupported key type: {key_type}")

    encrypted = key_type == "ENCRYPTED" or "Proc-Type: 4,ENCRYPTED" in body
    if encrypted:
        # Drop RFC 1421 headers before checking the payload
        body = body.split("\n\n", 1)[-1]
        if not passphrase:
            issues.append("Encrypted private keys require a passphrase")
    elif passphrase and key_type != "OPENSSH":
        issues.append("Passphrase provided but key does not appear to be encrypted")

    compact = re.sub(r"\s+", "", body)
    if not _is_base64(body):
        issues.append("Private key content is not properly Base64 encoded")
    elif len(compact) < MIN_KEY_BODY_LENGTH:
        issues.append("Private key content appears to be too short")

    blocking = [i for i in issues if not i.startswith("Passphrase provided")]
    return KeyValidationResult(not blocking, key_type, issues)


def validate_public_key(key: str) -> KeyValidationResult:
    text = (key or "").strip()
    if not text:
        return KeyValidationResult(False, issues=["SSH public key is empty"])

    parts = text.split()
    invalid = KeyValidationResult(False, issues=["Invalid SSH public key format. Expected OpenSSH format"])
    if len(parts) < 2 or parts[0] not in PUBLIC_KEY_TYPES or not _is_base64(parts[1]):
        return invalid

    return KeyValidationResult(True, PUBLIC_KEY_TYPES[parts[0]], [])


def check_key_file_permissions(path: str) -> PermissionCheckResult:
    """Key files must not be readable by group or others"""
    try:
        mode = os.stat(os.path.expanduser(path)).st_mode
    except OSError as e:
        return PermissionCheckResult(False, [f"Failed to check file permissions: {e}"])

    if mode & (stat.S_IRWXG | stat.S_IRWXO):
        return PermissionCheckResult(
            False,
            [f"Key file {path} has insecure permissions {oct(mode & 0o777)}; expected 0600 or stricter"],
        )
    return PermissionCheckResult(True, [])


def validate_key_file(path: str, passphrase: Optional[str] = None) -> KeyValidationResult:
    """Read a key file and validate its content and permissions"""
    try:
        with open(os.path.expanduser(path), "r", encoding="utf-8", errors="replace") as f:
            content = f.read()
    except OSError as e:
        return KeyValidationResult(False, issues=[f"Failed to read key file: {e}"])

    result = validate_private_key(content, passphrase)
    permissions = check_key_file_permissions(path)
    result.issues.extend(permissions.issues)
    return result


def validate_ssh_options(options: Any) -> OptionsValidationResult:
    """
    Structural checks on SSH options (attribute or dict access).

    Key content is not inspected here; see validate_private_key.
    """
    def get(name: str):
        if isinstance(options, dict):
            return options.get(name)
        return getattr(options, name, None)

    issues: List[str] = []
    if not get("host"):
        issues.append("SSH host is required")
    if not get("username"):
        issues.append("SSH username is required")

    port = get("port")
    if port is not None and (
        isinstance(port, bool) or not isinstance(port, int) or not 1 <= port <= 65535
    ):
        issues.append("SSH port must be a valid port number (1-65535)")

    has_key = bool(get("private_key") or get("private_key_path"))
    has_password = bool(get("password"))
    if not has_key and not has_password:
        issues.append("Either private_key or password must be provided for authentication")
    elif has_key and has_password:
        issues.append("Both private_key and password provided. Only one authentication method should be used")

    return OptionsValidationResult(not issues, issues)
