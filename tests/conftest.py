"""Shared fixtures: a root -> intermediate -> leaf hierarchy and a fake HTTP session."""

from datetime import datetime, timedelta, timezone
from unittest.mock import Mock

import pytest
import requests
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import AuthorityInformationAccessOID, NameOID

INTERMEDIATE_URL = "http://example.com/intermediate.der"
LATEST_BUNDLE_URL = "https://curl.se/ca/cacert.pem"


def _name(cn):
    return x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, cn)])


def make_cert(subject_cn, issuer_cn, signing_key, *, key=None, serial=None, ca=False,
              path_length=None, aia_url=None):
    key = key or ec.generate_private_key(ec.SECP256R1())
    now = datetime.now(timezone.utc)
    builder = (
        x509.CertificateBuilder()
        .subject_name(_name(subject_cn))
        .issuer_name(_name(issuer_cn))
        .public_key(key.public_key())
        .serial_number(serial or x509.random_serial_number())
        .not_valid_before(now - timedelta(days=1))
        .not_valid_after(now + timedelta(days=1))
        .add_extension(x509.BasicConstraints(ca=ca, path_length=path_length), critical=True)
    )
    if ca:
        builder = builder.add_extension(
            x509.KeyUsage(
                digital_signature=True, content_commitment=False, key_encipherment=False,
                data_encipherment=False, key_agreement=False, key_cert_sign=True,
                crl_sign=True, encipher_only=False, decipher_only=False,
            ),
            critical=True,
        )
    if aia_url:
        builder = builder.add_extension(
            x509.AuthorityInformationAccess([
                x509.AccessDescription(
                    AuthorityInformationAccessOID.CA_ISSUERS,
                    x509.UniformResourceIdentifier(aia_url),
                ),
            ]),
            critical=False,
        )
    return builder.sign(signing_key or key, hashes.SHA256()), key


def pem(cert):
    return cert.public_bytes(serialization.Encoding.PEM)


def der(cert):
    return cert.public_bytes(serialization.Encoding.DER)


@pytest.fixture(scope="session")
def root():
    key = ec.generate_private_key(ec.SECP256R1())
    cert, _ = make_cert("Test Root CA", "Test Root CA", key, key=key, serial=1, ca=True)
    return cert, key


@pytest.fixture(scope="session")
def intermediate(root):
    root_cert, root_key = root
    return make_cert("Test Intermediate CA", "Test Root CA", root_key, serial=2, ca=True, path_length=0)


@pytest.fixture(scope="session")
def leaf(intermediate):
    _, intermediate_key = intermediate
    cert, _ = make_cert("example.com", "Test Intermediate CA", intermediate_key, serial=3,
                        aia_url=INTERMEDIATE_URL)
    return cert


@pytest.fixture(scope="session")
def self_signed():
    cert, _ = make_cert("example.com", "example.com", None, serial=4)
    return cert


def fake_response(content=b"", status_code=200):
    response = Mock()
    response.content = content
    response.status_code = status_code
    if status_code >= 400:
        response.raise_for_status.side_effect = requests.HTTPError(f"{status_code} Client Error")
    return response


def fake_session(routes):
    """A Mock session whose get() serves ``routes`` (url -> bytes, response or exception)."""
    def get(url, **kwargs):
        if url not in routes:
            raise requests.ConnectionError(f"no route to {url}")
        body = routes[url]
        if isinstance(body, Exception):
            raise body
        if isinstance(body, bytes):
            return fake_response(body)
        return body

    session = Mock()
    session.get.side_effect = get
    return session


@pytest.fixture
def chain_session(root, intermediate):
    return fake_session({
        INTERMEDIATE_URL: der(intermediate[0]),
        LATEST_BUNDLE_URL: pem(root[0]),
    })
