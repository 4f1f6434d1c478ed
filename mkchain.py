#!/usr/bin/env python3
"""
Build the intermediate certificate chain for a leaf certificate by
following its AIA CA Issuers URLs, verify it against the curl CA bundle
and print it as PEM, ready for a TLS server configuration.
"""

import argparse
import datetime
import logging
import os
import sys

from cert_lib import MkChainError
from cacert_bundle import CAEXTRACT_URL, TIMEOUT
from chain_lib import ResolutionOptions, resolve_chain

__version__ = "1.0.0"


def cacert_date(value):
    try:
        datetime.datetime.strptime(value, "%Y-%m-%d")
    except ValueError:
        raise argparse.ArgumentTypeError("Invalid date format. Use YYYY-MM-DD.")
    return value


def build_parser():
    parser = argparse.ArgumentParser(
        prog="mkchain",
        description="Build a verified intermediate certificate chain from a leaf certificate.",
    )
    parser.add_argument("cert", help="Leaf certificate file (PEM or DER)")
    parser.add_argument("-l", "--include-leaf", action="store_true", help="Include the leaf certificate")
    parser.add_argument("-r", "--include-root", action="store_true", help="Include the root certificate")
    parser.add_argument(
        "-c", "--cacert-date", type=cacert_date, metavar="DATE",
        help="Build chain against a specific CA bundle revision for better legacy client "
             f"compatibility. See {CAEXTRACT_URL}",
    )
    parser.add_argument("-o", "--output", help="Write the chain to this file instead of stdout")
    parser.add_argument("--timeout", type=float, default=TIMEOUT,
                        help=f"HTTP timeout in seconds (default: {TIMEOUT})")
    parser.add_argument("--verbose", action="store_true", help="Log fetched URLs and found certificates")
    parser.add_argument("-v", "--version", action="version", version=f"mkchain {__version__}")
    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s: %(message)s",
        stream=sys.stderr,
    )

    filename = args.cert.strip()
    if not os.path.exists(filename):
        print(f"Error: No such file '{filename}'")
        sys.exit(1)
    if not os.access(filename, os.R_OK):
        print(f"Error: Cannot read file '{filename}'")
        sys.exit(1)

    options = ResolutionOptions(
        include_leaf=args.include_leaf,
        include_root=args.include_root,
        cacert_date=args.cacert_date,
    )

    try:
        with open(filename, "rb") as f:
            chain = resolve_chain(f.read(), options, timeout=args.timeout)
    except MkChainError as e:
        print(f"Error: {e}")
        sys.exit(1)
    except Exception as e:
        print(f"Unexpected error: {e}")
        sys.exit(1)

    if args.output:
        with open(args.output, "wb") as f:
            f.write(chain.encode("ascii"))
        print(f"Saved chain to {args.output}.", file=sys.stderr)
    else:
        sys.stdout.write(chain)


if __name__ == "__main__":
    main()
