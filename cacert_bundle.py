"""
Download a dated revision of the curl CA bundle and load it as an
OpenSSL trust store.
"""

from __future__ import annotations

import logging
import os
import tempfile
from typing import Optional

import requests
from OpenSSL import crypto

from cert_lib import FetchFailure

logger = logging.getLogger(__name__)

CACERT_URL_TEMPLATE = "https://curl.se/ca/cacert{suffix}.pem"
CAEXTRACT_URL = "https://curl.se/docs/caextract.html"
TIMEOUT = 30


def revision_label(cacert_date: Optional[str]) -> str:
    return cacert_date or "latest"


def cacert_url(cacert_date: Optional[str] = None) -> str:
    suffix = f"-{cacert_date}" if cacert_date else ""
    return CACERT_URL_TEMPLATE.format(suffix=suffix)


def download_cacert_bundle(
    cacert_date: Optional[str] = None,
    *,
    session: Optional[requests.Session] = None,
    timeout: float = TIMEOUT,
) -> bytes:
    """Fetch the PEM root bundle for ``cacert_date`` (latest if ``None``).

    Raises FetchFailure naming the revision when the download fails or the
    server answers with anything but 2xx.
    """
    url = cacert_url(cacert_date)
    label = revision_label(cacert_date)
    http = session or requests
    logger.debug("Downloading CA bundle (%s) from %s", label, url)
    try:
        r = http.get(url, timeout=timeout)
        r.raise_for_status()
    except requests.RequestException as e:
        raise FetchFailure(
            f"No CA bundle found for date {label} ({e}). Please check the date format or "
            f"availability. For a subset of available revisions, visit {CAEXTRACT_URL}"
        ) from e
    return r.content


def load_trust_store(bundle: bytes, cacert_date: Optional[str] = None) -> crypto.X509Store:
    """Load a PEM bundle into an X509Store.

    The bundle is staged in a temporary file for the OpenSSL loader; the
    file is removed on every exit path.
    """
    label = revision_label(cacert_date)
    fd, path = tempfile.mkstemp(prefix=f"cacert-{label}-", suffix=".pem")
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(bundle)
        store = crypto.X509Store()
        store.load_locations(path)
    except crypto.Error as e:
        raise FetchFailure(f"Failed to load CA bundle ({label}): {e}") from e
    finally:
        os.unlink(path)
    return store


def fetch_trust_store(
    cacert_date: Optional[str] = None,
    *,
    session: Optional[requests.Session] = None,
    timeout: float = TIMEOUT,
) -> crypto.X509Store:
    bundle = download_cacert_bundle(cacert_date, session=session, timeout=timeout)
    return load_trust_store(bundle, cacert_date)
