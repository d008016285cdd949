#!/usr/bin/env python3
"""
Turn a partially specified record (name, maybe a type, a value or a way to find
one, maybe a TTL) into a single Route 53 UPSERT.

Stages run strictly in order and each one either returns its result or raises
one of the errors from `common`; nothing here catches them.

    values -> type -> hosted zone -> TTL -> clear conflicts -> upsert -> wait
"""

from __future__ import annotations

import dataclasses
import ipaddress
import logging
import time
from typing import Any, Callable, Dict, List, Optional

from common import (
    DEFAULT_TTL,
    RECORD_TYPES,
    Change,
    ChangeBatch,
    ChangeInfo,
    ConfigError,
    DiscoveryError,
    FetchError,
    HostedZoneType,
    IPAddressType,
    RecordSet,
    ValueFromSource,
    Zone,
    normalize_zone_id,
)

logger = logging.getLogger(__name__)

# Types that cannot share a name with a CNAME (or, for A/AAAA, with each other
# when a CNAME is being replaced).
CLEARABLE_TYPES = ("A", "AAAA", "CNAME")

CLEAR_TYPE_ERROR = "--clear only works with A, AAAA, or CNAME"


@dataclasses.dataclass
class UpdateRequest:
    record_name: str
    record_type: Optional[str] = None
    values: List[str] = dataclasses.field(default_factory=list)
    value_from: Optional[ValueFromSource] = None
    value_from_url: Optional[str] = None
    ip_address_type: IPAddressType = IPAddressType.PUBLIC
    ttl: Optional[int] = None
    comment: Optional[str] = None
    clear: bool = False
    wait: bool = False
    hosted_zone_id: Optional[str] = None
    hosted_zone_name: Optional[str] = None
    hosted_zone_type: HostedZoneType = HostedZoneType.PREFER_PUBLIC


@dataclasses.dataclass
class DesiredRecord:
    name: str
    type: str
    values: List[str]
    ttl: Optional[int] = None
    clear: bool = False
    comment: Optional[str] = None


def normalize_name(name: str) -> str:
    if not name.endswith("."):
        name += "."
    return name


def names_equal(a: str, b: str) -> bool:
    return normalize_name(a).lower() == normalize_name(b).lower()


def validate_request(req: UpdateRequest) -> None:
    """Reject inconsistent options before anything touches the network."""
    if not req.record_name:
        raise ConfigError("a record name must be supplied with --record-name.")
    if req.hosted_zone_id and req.hosted_zone_name:
        raise ConfigError("can only use one of --hosted-zone-id or --hosted-zone-name.")

    sources = [bool(req.values), req.value_from is not None, bool(req.value_from_url)]
    if sum(sources) > 1:
        raise ConfigError("can only use one of --value, --value-from, or --value-from-url.")
    if not any(sources):
        raise ConfigError(
            "value must be supplied with either --value, --value-from, or --value-from-url."
        )

    if req.record_type is not None and req.record_type not in RECORD_TYPES:
        raise ConfigError(f"unsupported record type: {req.record_type}")
    if req.record_type == "TXT" and req.clear:
        raise ConfigError(CLEAR_TYPE_ERROR)
    if req.value_from is not None and req.record_type not in (None, "A", "AAAA"):
        raise ConfigError("--value-from is only usable with --record-type A or AAAA")
    if req.ttl is not None and req.ttl < 0:
        raise ConfigError(f"TTL must not be negative: {req.ttl}")


def detect_record_type(values: List[str]) -> str:
    """A if every value is an IPv4 address, AAAA if every value is IPv6, else TXT."""
    try:
        addrs = [ipaddress.ip_address(v) for v in values]
    except ValueError:
        return "TXT"
    if all(a.version == 4 for a in addrs):
        return "A"
    if all(a.version == 6 for a in addrs):
        return "AAAA"
    # Mixed IPv4/IPv6 is not split into A and AAAA records.
    return "TXT"


def quote_txt_value(value: str) -> str:
    if len(value) >= 2 and value.startswith('"') and value.endswith('"'):
        return value
    return f'"{value}"'


def quote_txt_values(values: List[str]) -> List[str]:
    return [quote_txt_value(v) for v in values]


def ecs_task_addresses(task: Dict[str, Any], record_type: Optional[str]) -> List[str]:
    # Naively uses the first network of the first container; with awsvpc networking
    # every container in the task shares it anyway.
    containers = task.get("Containers") or []
    if not containers:
        return []
    networks = containers[0].get("Networks") or []
    if not networks:
        return []
    key = "IPv6Addresses" if record_type == "AAAA" else "IPv4Addresses"
    # The ECS metadata service can return "IPv4Addresses": [""]
    return [a for a in networks[0].get(key) or [] if a]


def ec2_metadata_path(record_type: Optional[str], ip_address_type: IPAddressType) -> str:
    if record_type in (None, "A"):
        if ip_address_type is IPAddressType.PRIVATE:
            return "local-ipv4"
        return "public-ipv4"
    if record_type == "AAAA":
        return "ipv6"
    raise ConfigError("--value-from is only usable with --record-type A or AAAA")


def values_from_metadata(
    metadata: Any,
    source: ValueFromSource,
    record_type: Optional[str],
    ip_address_type: IPAddressType,
) -> List[str]:
    values: List[str] = []

    if source in (ValueFromSource.AUTO, ValueFromSource.ECS_METADATA):
        try:
            task = metadata.get_ecs_task_metadata()
        except FetchError as e:
            if source is not ValueFromSource.AUTO:
                raise
            logger.warning("ECS task metadata unavailable, trying EC2: %s", e)
            task = None
        if task is not None:
            logger.debug("ECS task metadata: %s", task)
            values = ecs_task_addresses(task, record_type)

    if source is ValueFromSource.EC2_METADATA or (
        source is ValueFromSource.AUTO and not values
    ):
        path = ec2_metadata_path(record_type, ip_address_type)
        value = metadata.get_ec2_metadata(path)
        if value:
            logger.debug("EC2 metadata %s: %s", path, value)
            values.append(value)

    if not values:
        if source is ValueFromSource.AUTO:
            raise DiscoveryError(
                "unable to auto-detect an IP address to use (missing ECS environment "
                "variables and unable to connect to the EC2 instance metadata service)"
            )
        raise DiscoveryError(f"{source.value} did not provide an IP address to use")
    return values


def resolve_values(req: UpdateRequest, metadata: Any) -> List[str]:
    if req.values:
        return list(req.values)

    if req.value_from_url:
        value = metadata.fetch_url(req.value_from_url)
        logger.info("%s returned %r", req.value_from_url, value)
        if not value:
            raise DiscoveryError(f"{req.value_from_url} returned an empty value")
        return [value]

    return values_from_metadata(
        metadata, req.value_from, req.record_type, req.ip_address_type
    )


def select_hosted_zone(
    zones: List[Zone], hosted_zone_type: HostedZoneType
) -> Optional[Zone]:
    """
    Pick one zone out of several sharing a name.

    The zone whose visibility matches wins. With prefer-public and no public zone
    the first listed zone is used; with public or private and no match, nothing is.
    """
    if not zones:
        return None
    if hosted_zone_type is HostedZoneType.ANY:
        if len(zones) > 1:
            raise DiscoveryError(
                f"found {len(zones)} hosted zones named {zones[0].name}, "
                "please use --hosted-zone-id or --hosted-zone-type"
            )
        return zones[0]

    want_private = hosted_zone_type is HostedZoneType.PRIVATE
    for zone in zones:
        if zone.private == want_private:
            return zone
    if hosted_zone_type is HostedZoneType.PREFER_PUBLIC:
        return zones[0]
    return None


def parent_name(name: str) -> Optional[str]:
    """Drop the leftmost label: "a.example.com." -> "example.com.", "com." -> None."""
    _, sep, rest = name.partition(".")
    if not sep or not rest:
        return None
    return rest


def find_hosted_zone(
    zones: List[Zone], record_name: str, hosted_zone_type: HostedZoneType
) -> Zone:
    search_name: Optional[str] = normalize_name(record_name)
    last_searched = search_name
    while search_name is not None:
        last_searched = search_name
        logger.debug("Looking for a hosted zone named %s", search_name)
        zone = select_hosted_zone(
            [z for z in zones if names_equal(z.name, search_name)], hosted_zone_type
        )
        if zone is not None:
            return zone
        search_name = parent_name(search_name)
    raise DiscoveryError(
        f"could not find the hosted zone for: {record_name} "
        f"(last searched {last_searched}, hosted zone type {hosted_zone_type.value})"
    )


def find_hosted_zone_by_name(
    zones: List[Zone], zone_name: str, hosted_zone_type: HostedZoneType
) -> Zone:
    zone_name = normalize_name(zone_name)
    zone = select_hosted_zone(
        [z for z in zones if names_equal(z.name, zone_name)], hosted_zone_type
    )
    if zone is None:
        raise DiscoveryError(f"could not find a hosted zone with name: {zone_name}")
    return zone


def resolve_hosted_zone_id(route53: Any, req: UpdateRequest, record_name: str) -> str:
    if req.hosted_zone_id:
        return normalize_zone_id(req.hosted_zone_id)

    zones, truncated = route53.list_hosted_zones()
    if truncated:
        raise DiscoveryError(
            "you have a lot of hosted zones and this program does not paginate yet, "
            "please use --hosted-zone-id"
        )

    if req.hosted_zone_name:
        zone = find_hosted_zone_by_name(zones, req.hosted_zone_name, req.hosted_zone_type)
    else:
        zone = find_hosted_zone(zones, record_name, req.hosted_zone_type)
    logger.info("Found hosted zone: %s (%s)", zone.id, zone.name)
    return zone.id


def find_ttl(records: List[RecordSet], record_name: str, record_type: str) -> int:
    for r in records:
        if names_equal(r.name, record_name) and r.type == record_type and r.ttl is not None:
            logger.info("Copied TTL from existing record: %d", r.ttl)
            return r.ttl
    logger.info("Using default TTL: %d", DEFAULT_TTL)
    return DEFAULT_TTL


def conflicting_record_sets(
    records: List[RecordSet], record_name: str, record_type: str
) -> List[RecordSet]:
    """
    Records at the same name that Route 53 would refuse to keep next to the new one.

    A CNAME cannot coexist with anything, so a CNAME target clears every A, AAAA
    and CNAME record; otherwise only the other clearable types are removed.
    """
    return [
        r
        for r in records
        if names_equal(r.name, record_name)
        and r.type in CLEARABLE_TYPES
        and (record_type == "CNAME" or r.type != record_type)
    ]


def clear_conflicts(
    route53: Any, zone_id: str, records: List[RecordSet], record: DesiredRecord
) -> Optional[ChangeInfo]:
    # Deleting and re-adding in one batch fails for some type combinations, e.g.
    # "RRSet of type CNAME with DNS name ... is not permitted as it conflicts with
    # other records with the same DNS name", so deletes go in their own batch.
    conflicts = conflicting_record_sets(records, record.name, record.type)
    if not conflicts:
        return None
    batch = ChangeBatch(changes=[Change("DELETE", r) for r in conflicts])
    for r in conflicts:
        logger.info("Will delete %s %s", r.type, r.name)
    change = route53.change_record_sets(zone_id, batch)
    logger.info("Delete submitted: %s", change)
    return change


def build_upsert(record: DesiredRecord) -> ChangeBatch:
    rrs = RecordSet(
        name=record.name,
        type=record.type,
        ttl=record.ttl,
        values=list(record.values),
    )
    return ChangeBatch(changes=[Change("UPSERT", rrs)], comment=record.comment)


def submit_upsert(route53: Any, zone_id: str, record: DesiredRecord) -> ChangeInfo:
    batch = build_upsert(record)
    logger.info(
        "Upserting %s %s -> %s (TTL %s) in %s",
        record.type,
        record.name,
        ", ".join(record.values),
        record.ttl,
        zone_id,
    )
    logger.debug("Change batch: %s", batch.to_route53())
    change = route53.change_record_sets(zone_id, batch)
    logger.info("Change submitted: %s", change)
    return change


def wait_for_change(
    route53: Any,
    change_id: str,
    interval: float = 1.0,
    sleep: Optional[Callable[[float], None]] = None,
) -> ChangeInfo:
    # No timeout; interrupting the process is the way out.
    while True:
        (sleep or time.sleep)(interval)
        change = route53.get_change(change_id)
        logger.info("Change %s is %s", change.id, change.status)
        if change.status == "INSYNC":
            return change


def reconcile(
    req: UpdateRequest,
    route53: Any,
    metadata: Any,
    sleep: Optional[Callable[[float], None]] = None,
    on_submit: Optional[Callable[[ChangeInfo], None]] = None,
) -> ChangeInfo:
    """
    Run every stage and return the submitted change, or its INSYNC state with
    `req.wait`. `on_submit` sees the submitted change before any waiting.
    """
    validate_request(req)
    record_name = normalize_name(req.record_name)

    values = resolve_values(req, metadata)

    record_type = req.record_type
    if record_type is None:
        record_type = detect_record_type(values)
        logger.info("Detected record type: %s", record_type)
        if record_type == "TXT" and req.clear:
            raise ConfigError(CLEAR_TYPE_ERROR)

    # TXT records must be enclosed in quotes
    if record_type == "TXT":
        values = quote_txt_values(values)

    record = DesiredRecord(
        name=record_name,
        type=record_type,
        values=values,
        ttl=req.ttl,
        clear=req.clear,
        comment=req.comment,
    )

    zone_id = resolve_hosted_zone_id(route53, req, record_name)

    if record.ttl is None or record.clear:
        records, truncated = route53.list_record_sets(zone_id)
        if truncated:
            logger.warning(
                "This zone has a lot of record sets and this program does not paginate "
                "yet, so --clear might not find every conflicting record."
            )
        if record.ttl is None:
            record.ttl = find_ttl(records, record.name, record.type)
        if record.clear:
            clear_conflicts(route53, zone_id, records, record)

    change = submit_upsert(route53, zone_id, record)
    if on_submit is not None:
        on_submit(change)
    if req.wait:
        change = wait_for_change(route53, change.id, sleep=sleep)
    return change
