"""
Resolve the intermediate certificates of a leaf X.509 certificate:
- follow Authority Information Access (AIA) CA Issuers URLs breadth-first
- verify the leaf plus candidates against a pinned CA bundle
- emit the verified chain as concatenated PEM
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Union

import requests
import urllib3
from cryptography import x509
from cryptography.x509.oid import AuthorityInformationAccessOID, ExtensionOID
from OpenSSL import crypto

from cacert_bundle import TIMEOUT, fetch_trust_store
from cert_lib import (
    FetchFailure,
    InvalidInput,
    NoChainFoundException,
    UnknownFormat,
    VerificationFailure,
    certificate_identity,
    decode_certificates,
    decode_der,
    decode_pem,
    get_common_name,
    is_self_signed,
    to_pem,
)

urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

logger = logging.getLogger(__name__)

USER_AGENT = "mkchain"


@dataclass(frozen=True)
class ResolutionOptions:
    include_leaf: bool = False
    include_root: bool = False
    cacert_date: Optional[str] = None


class IssuerFetcher:
    """Download issuer certificates, memoized by URL.

    One instance belongs to a single resolution; its cache is never shared.
    """

    def __init__(self, session: Optional[requests.Session] = None, timeout: float = TIMEOUT,
                 verify: bool = False):
        self.session = session or requests.Session()
        self.timeout = timeout
        self.verify = verify
        self._cache: Dict[str, List[x509.Certificate]] = {}

    def fetch(self, url: str) -> List[x509.Certificate]:
        if url in self._cache:
            logger.debug("Cache hit: %s", url)
            return self._cache[url]

        logger.debug("Fetching: %s", url)
        try:
            r = self.session.get(
                url,
                timeout=self.timeout,
                verify=self.verify,
                headers={"User-Agent": USER_AGENT},
            )
            r.raise_for_status()
        except requests.RequestException as e:
            raise FetchFailure(f"Failed to fetch certificates from {url}: {e}") from e

        data = r.content
        if data.startswith(b"-----BEGIN "):
            certs = decode_pem(data)
        elif data[:1] == b"\x30":
            certs = decode_der(data)
        else:
            raise UnknownFormat(
                f"Unknown certificate format - found leading bytes: {data[:4].hex()}"
            )

        self._cache[url] = certs
        return certs


def extract_issuer_uri(cert: x509.Certificate) -> Optional[str]:
    """Return the first http(s) CA Issuers URI of the AIA extension, if any."""
    try:
        aia_ext = cert.extensions.get_extension_for_oid(ExtensionOID.AUTHORITY_INFORMATION_ACCESS)
    except x509.ExtensionNotFound:
        return None
    except ValueError as e:
        logger.warning("Ignoring unparsable extensions of %s: %s", get_common_name(cert.subject), e)
        return None

    for access in aia_ext.value:
        if access.access_method != AuthorityInformationAccessOID.CA_ISSUERS:
            continue
        location = access.access_location
        if not isinstance(location, x509.UniformResourceIdentifier):
            continue
        if location.value.lower().startswith(("http://", "https://")):
            return location.value
    return None


def discover_intermediates(leaf: x509.Certificate, fetcher: IssuerFetcher) -> List[x509.Certificate]:
    """Collect candidate intermediates reachable from ``leaf`` via AIA.

    Breadth-first over an explicit queue. Self-signed certificates are
    skipped and every identity is enqueued at most once, which also bounds
    traversal of cyclic AIA graphs. A URL that cannot be fetched or decoded
    only prunes its own branch.

    Raises
    ------
    NoChainFoundException
        If no candidate was found.
    """
    untrusted = []
    seen = set()
    queue = deque([leaf])

    while queue:
        current = queue.popleft()
        uri = extract_issuer_uri(current)
        if not uri:
            continue

        try:
            candidates = fetcher.fetch(uri)
        except (FetchFailure, UnknownFormat) as e:
            logger.warning("Skipping issuer of %s: %s", get_common_name(current.subject), e)
            continue

        for cert in candidates:
            if is_self_signed(cert):
                continue
            key = certificate_identity(cert)
            if key in seen:
                continue
            seen.add(key)
            untrusted.append(cert)
            queue.append(cert)
            logger.debug("Found intermediate: %s", get_common_name(cert.subject))

    if not untrusted:
        raise NoChainFoundException("No intermediate certificates found")
    return untrusted


def build_trusted_chain(
    leaf: x509.Certificate,
    untrusted: Sequence[x509.Certificate],
    store: crypto.X509Store,
) -> List[x509.Certificate]:
    """Verify ``leaf`` against ``store`` and return the chain leaf to root."""
    ctx = crypto.X509StoreContext(
        store,
        crypto.X509.from_cryptography(leaf),
        chain=[crypto.X509.from_cryptography(cert) for cert in untrusted],
    )
    try:
        verified = ctx.get_verified_chain()
    except crypto.X509StoreContextError as e:
        raise VerificationFailure(f"Failed to verify and build chain: {e}") from e

    chain = [cert.to_cryptography() for cert in verified]
    if not chain:
        raise NoChainFoundException("No valid certificate chain found")
    return chain


def assemble_chain(chain: Sequence[x509.Certificate], options: ResolutionOptions) -> str:
    """Trim root and/or leaf as configured and join the rest as PEM.

    Both trims are independent slices, so a one-element chain with both
    flags off gives an empty string.
    """
    certs = list(chain)
    if not options.include_root:
        certs = certs[:-1]
    if not options.include_leaf:
        certs = certs[1:]
    return "".join(to_pem(cert) for cert in certs)


def resolve_chain(
    cert_data: Union[bytes, str, None],
    options: Optional[ResolutionOptions] = None,
    *,
    session: Optional[requests.Session] = None,
    timeout: float = TIMEOUT,
) -> str:
    """Resolve and verify the chain of a PEM or DER leaf certificate.

    Parameters
    ----------
    cert_data : bytes or str
        The leaf certificate; only the first certificate is used.
    options : ResolutionOptions, optional
        Leaf/root inclusion and CA bundle revision (default: neither, latest).
    session : requests.Session, optional
        Session for all downloads; a private one is created and closed if omitted.
    timeout : float, optional
        Per-request timeout in seconds (default: 30).

    Returns
    -------
    str
        The requested part of the chain as concatenated PEM.
    """
    if cert_data is None or not cert_data.strip():
        raise InvalidInput("Certificate string cannot be nil or empty")
    options = options or ResolutionOptions()

    own_session = session is None
    http = session or requests.Session()
    try:
        leaf = decode_certificates(cert_data)[0]
        logger.debug("Resolving chain for %s", get_common_name(leaf.subject))

        fetcher = IssuerFetcher(http, timeout=timeout)
        untrusted = discover_intermediates(leaf, fetcher)

        store = fetch_trust_store(options.cacert_date, session=http, timeout=timeout)
        chain = build_trusted_chain(leaf, untrusted, store)
        return assemble_chain(chain, options)
    finally:
        if own_session:
            http.close()
