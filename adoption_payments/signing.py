"""
Canonical parameter strings and RSA signatures for the card gateway.

The gateway and this service must derive byte-identical strings from the same
parameters, so canonicalization is a fixed policy: empty values are dropped,
keys are sorted by byte value and joined as ``KEY=value`` pairs with ``|``.
"""
import base64
import binascii
import logging
from typing import Mapping, Optional, Union

from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa

logger = logging.getLogger(__name__)

DELIMITER = "|"

HASHES = {
    "sha1": hashes.SHA1,
    "sha256": hashes.SHA256,
    "sha512": hashes.SHA512,
}

PemLike = Union[str, bytes]


def _hash(hash_name: str) -> hashes.HashAlgorithm:
    try:
        return HASHES[hash_name.lower()]()
    except KeyError:
        raise ValueError(f"Unsupported signature hash: {hash_name}")


def _as_bytes(value: PemLike) -> bytes:
    return value.encode("utf-8") if isinstance(value, str) else value


def canonicalize(params: Mapping[str, object]) -> str:
    entries = []
    for key, value in params.items():
        if value is None:
            continue
        text = str(value)
        if text == "":
            continue
        entries.append((key, text))

    entries.sort(key=lambda item: item[0].encode("utf-8"))
    return DELIMITER.join(f"{key}={value}" for key, value in entries)


def load_private_key(pem: PemLike, passphrase: Optional[str] = None) -> rsa.RSAPrivateKey:
    password = passphrase.encode("utf-8") if passphrase else None
    key = serialization.load_pem_private_key(_as_bytes(pem), password=password)
    if not isinstance(key, rsa.RSAPrivateKey):
        raise ValueError("Gateway signing key must be an RSA private key")
    return key


def load_public_key(pem: PemLike) -> rsa.RSAPublicKey:
    data = _as_bytes(pem)
    if b"BEGIN CERTIFICATE" in data:
        from cryptography import x509

        key = x509.load_pem_x509_certificate(data).public_key()
    else:
        key = serialization.load_pem_public_key(data)
    if not isinstance(key, rsa.RSAPublicKey):
        raise ValueError("Gateway verification key must be an RSA public key")
    return key


def sign(canonical: str, private_key_pem: PemLike, passphrase: Optional[str] = None,
         hash_name: str = "sha1") -> str:
    key = load_private_key(private_key_pem, passphrase)
    signature = key.sign(canonical.encode("utf-8"), padding.PKCS1v15(), _hash(hash_name))
    return base64.b64encode(signature).decode("ascii")


def verify(canonical: str, signature: Optional[str], public_key_pem: PemLike,
           hash_name: str = "sha1") -> bool:
    """Return True only for a valid signature; never raises on bad input."""
    if not signature:
        return False

    try:
        raw = base64.b64decode(signature, validate=True)
    except (binascii.Error, ValueError):
        logger.warning("Gateway signature is not valid base64")
        return False

    try:
        key = load_public_key(public_key_pem)
        key.verify(raw, canonical.encode("utf-8"), padding.PKCS1v15(), _hash(hash_name))
    except InvalidSignature:
        return False
    except (ValueError, TypeError, UnsupportedAlgorithm):
        logger.exception("Gateway signature could not be checked")
        return False

    return True
