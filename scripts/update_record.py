#!/usr/bin/env python3
"""
Create or update a Route 53 record, finding the hosted zone, the record type
and even the value on its own when they are not given.

Usage:
    python scripts/update_record.py --record-name service.example.com --value 203.0.113.5
    python scripts/update_record.py --record-name service.example.com --value-from auto --clear --wait
    python scripts/update_record.py --config config/service.example.com.yml
"""

from __future__ import annotations

import argparse
import logging
import sys
from typing import Any, Dict, Optional

from common import (
    ConfigError,
    DiscoveryError,
    FetchError,
    HostedZoneType,
    IPAddressType,
    MetadataClient,
    ProviderError,
    Route53Client,
    ValueFromSource,
    load_record_config,
)
from reconcile import UpdateRequest, reconcile, validate_request


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Create or update a Route 53 record (dynamic DNS)."
    )
    parser.add_argument(
        "--config",
        help="Path to a YAML file with any of the options below (flags take precedence)",
    )
    parser.add_argument(
        "--hosted-zone-id",
        help="The Hosted Zone ID (optional, looked up from --record-name if omitted)",
    )
    parser.add_argument(
        "--hosted-zone-name",
        help="Look up the Hosted Zone ID by this name instead of the record name "
        "(conflicts with --hosted-zone-id)",
    )
    parser.add_argument(
        "--hosted-zone-type",
        choices=[t.value for t in HostedZoneType],
        help="Filter hosted zones by visibility (default: prefer-public)",
    )
    parser.add_argument(
        "--record-name",
        metavar="NAME",
        help="Record name to update (e.g. service.example.com)",
    )
    parser.add_argument(
        "--record-type",
        metavar="TYPE",
        type=str.upper,
        help="Record type (optional, auto-detected from the value, TXT is used as fallback)",
    )
    parser.add_argument(
        "-v",
        "--value",
        action="append",
        metavar="VALUE",
        help="Record value (can be specified multiple times)",
    )
    parser.add_argument(
        "--value-from",
        choices=[s.value for s in ValueFromSource],
        metavar="SOURCE",
        help="Get the value from a metadata service ('auto', 'ec2-metadata' or 'ecs-metadata')",
    )
    parser.add_argument(
        "--value-from-url",
        metavar="URL",
        help="Get the value from a URL (e.g. https://checkip.amazonaws.com/)",
    )
    parser.add_argument(
        "--ip-address-type",
        choices=[t.value for t in IPAddressType],
        help="Use a public or private IP address with --value-from (default: public)",
    )
    parser.add_argument(
        "--ttl",
        type=int,
        help="TTL for the record (optional, copied from an existing record, 300 as fallback)",
    )
    parser.add_argument("--comment", help="Change batch comment")
    parser.add_argument(
        "--wait",
        action="store_true",
        default=None,
        help="Wait for the change to propagate in Route 53",
    )
    parser.add_argument(
        "--clear",
        action="store_true",
        default=None,
        help="Delete potentially conflicting records (A, AAAA, CNAME)",
    )
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")
    return parser


def merge_config(args: argparse.Namespace, config: Dict[str, Any]) -> argparse.Namespace:
    """Fill options not given on the command line from the config file."""
    for key, value in config.items():
        if getattr(args, key, None) is None:
            setattr(args, key, value)
    return args


def _choice(enum_cls: Any, value: Optional[str], default: Any) -> Any:
    if value is None:
        return default
    try:
        return enum_cls(value)
    except ValueError:
        choices = ", ".join(repr(e.value) for e in enum_cls)
        raise ConfigError(f"unsupported value {value!r} (supported: {choices})")


def request_from_args(args: argparse.Namespace) -> UpdateRequest:
    record_type = args.record_type.upper() if args.record_type else None
    return UpdateRequest(
        record_name=args.record_name or "",
        record_type=record_type,
        values=list(args.value or []),
        value_from=_choice(ValueFromSource, args.value_from, None),
        value_from_url=args.value_from_url,
        ip_address_type=_choice(IPAddressType, args.ip_address_type, IPAddressType.PUBLIC),
        ttl=args.ttl,
        comment=args.comment,
        clear=bool(args.clear),
        wait=bool(args.wait),
        hosted_zone_id=args.hosted_zone_id,
        hosted_zone_name=args.hosted_zone_name,
        hosted_zone_type=_choice(
            HostedZoneType, args.hosted_zone_type, HostedZoneType.PREFER_PUBLIC
        ),
    )


def setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="[%(levelname)s] %(message)s",
        stream=sys.stderr,
    )
    # Keep debug output about our own decisions, not every HTTP connection.
    for name in ("botocore", "boto3", "urllib3", "httpx", "httpcore"):
        logging.getLogger(name).setLevel(logging.WARNING)


def update_record(args: argparse.Namespace) -> None:
    if args.config:
        merge_config(args, load_record_config(args.config))

    req = request_from_args(args)
    # Fail on bad options before creating any clients.
    validate_request(req)

    change = reconcile(req, Route53Client(), MetadataClient(), on_submit=print)
    if req.wait:
        print(change)


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(args.verbose)

    try:
        update_record(args)
    except (ConfigError, DiscoveryError, FetchError, ProviderError) as e:
        print(f"[ERROR] {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("Interrupted", file=sys.stderr)
        return 130

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
