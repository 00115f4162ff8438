"""
Device credentials: private key loading and JWT signing.

The device authenticates with a short-lived ES256 JWT passed as the MQTT password.
Claims follow the Cloud IoT Core layout: iat, exp and aud (the project id).
"""

from __future__ import annotations

import enum
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union

import jwt
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec

logger = logging.getLogger(__name__)

PRIVATE_KEY_BUFFER_SIZE = 256
DEFAULT_TOKEN_TTL_S = 3600
ALGORITHM_ES256 = "ES256"


class KeyLoadReason(str, enum.Enum):
    NOT_FOUND = "not_found"
    TOO_LARGE = "too_large"
    TRUNCATED = "truncated"
    UNREADABLE = "unreadable"


class KeyLoadError(RuntimeError):
    """Raised when the private key file cannot be read into the key buffer."""

    def __init__(self, reason: KeyLoadReason, path: Path, message: str) -> None:
        super().__init__(message)
        self.reason = reason
        self.path = path


class SigningError(RuntimeError):
    """Raised when a token cannot be signed. ``code`` names the underlying failure."""

    def __init__(self, code: str, message: str) -> None:
        super().__init__(f"{code}: {message}")
        self.code = code


@dataclass(frozen=True, slots=True)
class Credential:
    key_pem: bytes
    project_id: str
    device_path: str
    algorithm: str = ALGORITHM_ES256


@dataclass(frozen=True, slots=True)
class AuthToken:
    value: str
    issued_at: int
    expires_at: int

    def is_expired(self, now: Optional[float] = None) -> bool:
        now = time.time() if now is None else now
        return now >= self.expires_at

    def expires_within(self, margin_s: float, now: Optional[float] = None) -> bool:
        now = time.time() if now is None else now
        return now + margin_s >= self.expires_at


def _missing_key_message(path: Path) -> str:
    return (
        "Missing private key required for JWT signing.\n"
        "\tCopy your device's EC private key into a file at the following path\n"
        f"\t(relative to the current working dir): '{path}'\n"
        "\tor pass another path with -f/--private_key_filename."
    )


def read_key_bytes(path: Union[str, Path], capacity: int = PRIVATE_KEY_BUFFER_SIZE) -> bytes:
    """
    Read a key file whose size must fit in ``capacity`` bytes.

    Raises KeyLoadError (NOT_FOUND, UNREADABLE, TOO_LARGE or TRUNCATED). Never reads past capacity.
    """
    path = Path(path)
    try:
        with path.open("rb") as fh:
            fh.seek(0, 2)
            file_size = fh.tell()
            fh.seek(0)

            if file_size > capacity:
                raise KeyLoadError(
                    KeyLoadReason.TOO_LARGE,
                    path,
                    f"private key file size of {file_size} bytes is larger than "
                    f"key buffer size of {capacity} bytes",
                )

            data = fh.read(file_size)
    except FileNotFoundError as exc:
        raise KeyLoadError(KeyLoadReason.NOT_FOUND, path, _missing_key_message(path)) from exc
    except OSError as exc:
        # directory, permissions, I/O error
        raise KeyLoadError(
            KeyLoadReason.UNREADABLE,
            path,
            f"cannot read private key file '{path}': {exc.strerror or exc}",
        ) from exc

    if len(data) != file_size:
        raise KeyLoadError(
            KeyLoadReason.TRUNCATED,
            path,
            f"could not fully read private key file ({len(data)} of {file_size} bytes)",
        )
    return data


def load_credential(
    path: Union[str, Path],
    project_id: str,
    device_path: str,
    *,
    capacity: int = PRIVATE_KEY_BUFFER_SIZE,
) -> Credential:
    key_pem = read_key_bytes(path, capacity)
    logger.info("Loaded private key from %s (%d bytes)", path, len(key_pem))
    return Credential(key_pem=key_pem, project_id=project_id, device_path=device_path)


def _load_signing_key(credential: Credential) -> ec.EllipticCurvePrivateKey:
    try:
        key = serialization.load_pem_private_key(credential.key_pem, password=None)
    except (ValueError, TypeError) as exc:
        raise SigningError(type(exc).__name__, f"cannot parse private key: {exc}") from exc

    if not isinstance(key, ec.EllipticCurvePrivateKey):
        raise SigningError("InvalidKeyType", f"{credential.algorithm} needs an EC private key")
    if not isinstance(key.curve, ec.SECP256R1):
        raise SigningError("InvalidKeyType", f"{credential.algorithm} needs a P-256 key, got {key.curve.name}")
    return key


def sign_token(
    credential: Credential,
    expiration_s: int = DEFAULT_TOKEN_TTL_S,
    *,
    now: Optional[float] = None,
) -> AuthToken:
    """
    Sign a JWT valid for ``expiration_s`` seconds from ``now`` (default: current time).

    Raises SigningError carrying the underlying error name as ``code``.
    """
    if expiration_s <= 0:
        raise SigningError("InvalidExpiration", f"expiration must be > 0, got {expiration_s}")

    issued_at = int(time.time() if now is None else now)
    expires_at = issued_at + int(expiration_s)
    claims = {"iat": issued_at, "exp": expires_at, "aud": credential.project_id}

    key = _load_signing_key(credential)
    try:
        value = jwt.encode(claims, key, algorithm=credential.algorithm)
    except (jwt.PyJWTError, NotImplementedError, ValueError, TypeError) as exc:
        raise SigningError(type(exc).__name__, str(exc)) from exc

    logger.debug("Signed %s token for %s, expires at %d", credential.algorithm, credential.project_id, expires_at)
    return AuthToken(value=value, issued_at=issued_at, expires_at=expires_at)
