"""Utility functions for working with X.509 certificates.

Provides the error types shared by the chain tools and centralized
functions for decoding certificates from the PEM, DER and PKCS#7
encodings that CA issuer URLs serve in practice.
"""

from __future__ import annotations

import re
from collections import namedtuple
from typing import List, Union

from cryptography import x509
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.serialization import pkcs7

__all__ = [
    "MkChainError",
    "InvalidInput",
    "UnknownFormat",
    "NoChainFoundException",
    "FetchFailure",
    "VerificationFailure",
    "CertificateIdentity",
    "certificate_identity",
    "decode_certificates",
    "decode_pem",
    "decode_der",
    "is_self_signed",
    "get_common_name",
    "to_pem",
]

PEM_BLOCK_RE = re.compile(
    rb"-----BEGIN CERTIFICATE-----(.*?)-----END CERTIFICATE-----",
    re.DOTALL,
)


class MkChainError(Exception):
    """Base class for errors reported to the user as ``Error: ...``."""


class InvalidInput(MkChainError, ValueError):
    """The leaf certificate is missing or blank."""


class UnknownFormat(MkChainError, ValueError):
    """Bytes that parse as none of PEM, DER, X.509 or PKCS#7."""


class NoChainFoundException(MkChainError):
    """No intermediates were discovered, or no chain could be built."""


class FetchFailure(MkChainError):
    """A download of issuer certificates or of the CA bundle failed."""


class VerificationFailure(MkChainError):
    """Path validation rejected the leaf and its candidate intermediates."""


CertificateIdentity = namedtuple("CertificateIdentity", ["subject", "issuer", "serial"])


def certificate_identity(cert: x509.Certificate) -> CertificateIdentity:
    """Key used to deduplicate candidates independent of their encoding."""
    return CertificateIdentity(
        cert.subject.rfc4514_string(),
        cert.issuer.rfc4514_string(),
        cert.serial_number,
    )


def _as_bytes(data: Union[bytes, str]) -> bytes:
    if isinstance(data, str):
        return data.encode("utf-8")
    return bytes(data)


def _load_pkcs7(data: bytes, loader) -> List[x509.Certificate]:
    try:
        return list(loader(data))
    except (ValueError, UnsupportedAlgorithm):
        return []


def _decode_pem_blocks(data: bytes) -> List[x509.Certificate]:
    certs = []
    for body in PEM_BLOCK_RE.findall(data):
        block = b"-----BEGIN CERTIFICATE-----\n" + body.strip() + b"\n-----END CERTIFICATE-----\n"
        try:
            certs.append(x509.load_pem_x509_certificate(block))
        except ValueError:
            continue
    return certs


def _decode_der_certificate(data: bytes) -> List[x509.Certificate]:
    try:
        return [x509.load_der_x509_certificate(data)]
    except ValueError:
        return []


def decode_pem(data: Union[bytes, str]) -> List[x509.Certificate]:
    """Decode PEM certificate blocks, falling back to PEM-wrapped PKCS#7.

    Parameters
    ----------
    data : bytes or str
        Text holding one or more ``CERTIFICATE`` blocks or a ``PKCS7`` block.

    Returns
    -------
    list of x509.Certificate
        Certificates in the order they appear in ``data``.

    Raises
    ------
    UnknownFormat
        If neither interpretation yields a certificate.
    """
    data = _as_bytes(data)
    certs = _decode_pem_blocks(data) or _load_pkcs7(data, pkcs7.load_pem_pkcs7_certificates)
    if not certs:
        raise UnknownFormat("Invalid PEM/PKCS#7 format")
    return certs


def decode_der(data: bytes) -> List[x509.Certificate]:
    """Decode a DER PKCS#7 bundle, falling back to a single DER certificate.

    PKCS#7 is tried first since it can wrap X.509 certificates.
    """
    data = _as_bytes(data)
    certs = _load_pkcs7(data, pkcs7.load_der_pkcs7_certificates) or _decode_der_certificate(data)
    if not certs:
        raise UnknownFormat("Invalid DER format - could not parse as PKCS#7 or X.509")
    return certs


def decode_certificates(data: Union[bytes, str]) -> List[x509.Certificate]:
    """Decode certificates from any supported encoding.

    Tries, in order: PEM certificate blocks, PEM PKCS#7, DER PKCS#7 (only
    for input starting with an ASN.1 SEQUENCE tag) and a single DER
    certificate. The first interpretation that yields a certificate wins.

    Parameters
    ----------
    data : bytes or str
        Raw certificate data, e.g. a file or HTTP response body.

    Returns
    -------
    list of x509.Certificate
        One or more parsed certificates.

    Raises
    ------
    UnknownFormat
        If no interpretation succeeds.
    """
    data = _as_bytes(data)
    certs = _decode_pem_blocks(data) or _load_pkcs7(data, pkcs7.load_pem_pkcs7_certificates)
    if not certs and data[:1] == b"\x30":
        certs = _load_pkcs7(data, pkcs7.load_der_pkcs7_certificates)
    if not certs:
        certs = _decode_der_certificate(data)
    if not certs:
        raise UnknownFormat(
            f"Unknown certificate format - found leading bytes: {data[:4].hex()}"
        )
    return certs


def is_self_signed(cert: x509.Certificate) -> bool:
    return cert.subject == cert.issuer


def get_common_name(name: x509.Name, default: str = "Unknown") -> str:
    """Extract Common Name from x509.Name object.

    Parameters
    ----------
    name : x509.Name
        Subject or issuer name.
    default : str, optional
        Value to return if CN not found (default: "Unknown").

    Returns
    -------
    str
        Common Name value or default.
    """
    cn_attrs = name.get_attributes_for_oid(x509.NameOID.COMMON_NAME)
    return cn_attrs[0].value if cn_attrs else default


def to_pem(cert: x509.Certificate) -> str:
    return cert.public_bytes(serialization.Encoding.PEM).decode("ascii")
