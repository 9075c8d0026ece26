#!/usr/bin/env python3
"""CLI entry point for pg-node-api.

Supports noun-action subcommands:
- server: Control-plane service (start/stop/reload/status)
- cert: Certificate utilities (inspect)
"""

import argparse
import json
import logging
import sys
from pathlib import Path

# Noun commands (noun-action subcommands)
NOUN_COMMANDS = {
    "server": "Control-plane service (start/stop/reload/status)",
    "cert": "Certificate utilities (inspect)",
}


def print_usage():
    print("Usage: pg-node-api <noun> <action> [options]")
    print()
    print("Nouns:")
    for noun, description in NOUN_COMMANDS.items():
        print(f"  {noun:<8} {description}")
    print()
    print("Run 'pg-node-api <noun> --help' for noun-specific actions.")


def dispatch_cert(argv: list) -> int:
    """Dispatch 'cert' noun: inspect a certificate and its TLS policy.

    Args:
        argv: Arguments after 'cert' (e.g., ['inspect', '/etc/ssl/node.pem'])

    Returns:
        Exit code: 0 = valid, 1 = usage error, 2 = invalid or expired
    """
    from server.tls import classify_certificate

    parser = argparse.ArgumentParser(
        prog="pg-node-api cert",
        description="Certificate utilities",
    )
    parser.add_argument("action", choices=["inspect"], help="Action to run")
    parser.add_argument("path", type=Path, help="PEM certificate file")
    parser.add_argument("--json", action="store_true", help="Output as JSON")

    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.WARNING,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    info = classify_certificate(args.path)
    if args.json:
        print(json.dumps(info.to_dict(), indent=2))
    else:
        kind = "self-signed" if info.self_signed else "CA-signed"
        print(f"Subject CN:   {info.subject or '-'}")
        print(f"Issuer CN:    {info.issuer or '-'}")
        print(f"Type:         {kind}")
        if info.not_after:
            print(f"Expires:      {info.not_after.isoformat()} ({info.days_remaining} days)")
        print(f"Valid:        {'yes' if info.valid else 'no'}")
        if info.fingerprint:
            print(f"Fingerprint:  {info.fingerprint}")
        policy = "required" if info.require_client_cert else "not required"
        print(f"Client certs: {policy}")
    return 0 if info.valid else 2


def main(argv=None) -> int:
    """CLI entry point: dispatch to noun-action handlers."""
    if argv is None:
        argv = sys.argv[1:]

    if not argv or argv[0] in ("-h", "--help"):
        print_usage()
        return 0

    noun, rest = argv[0], argv[1:]
    if noun == "server":
        from server.cli import main as server_main
        rc: int = server_main(rest)
        return rc
    if noun == "cert":
        return dispatch_cert(rest)

    print(f"Error: Unknown command '{noun}'")
    print(f"Available commands: {', '.join(NOUN_COMMANDS)}")
    return 1


if __name__ == "__main__":
    sys.exit(main())
