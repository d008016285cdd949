#!/usr/bin/env python3
"""
Common types, configuration loading and API clients for Route 53 record updates.

The clients are thin: they translate between Route 53 / metadata-service payloads
and the dataclasses below, and turn transport failures into the error types here.
"""

from __future__ import annotations

import dataclasses
import enum
import os
from datetime import datetime
from typing import List, Dict, Any, Optional, Tuple

import boto3
import httpx
import yaml
from botocore.exceptions import BotoCoreError, ClientError


class ConfigError(Exception):
    pass


class DiscoveryError(Exception):
    pass


class FetchError(Exception):
    pass


class ProviderError(Exception):
    pass


class HostedZoneType(enum.Enum):
    PREFER_PUBLIC = "prefer-public"
    PUBLIC = "public"
    PRIVATE = "private"
    # No visibility filtering; several same-named zones is an ambiguity error.
    ANY = "any"


class IPAddressType(enum.Enum):
    PUBLIC = "public"
    PRIVATE = "private"


class ValueFromSource(enum.Enum):
    AUTO = "auto"
    EC2_METADATA = "ec2-metadata"
    ECS_METADATA = "ecs-metadata"


RECORD_TYPES = (
    "A", "AAAA", "CAA", "CNAME", "DS", "HTTPS", "MX", "NAPTR", "NS",
    "PTR", "SOA", "SPF", "SRV", "SSHFP", "SVCB", "TLSA", "TXT",
)

DEFAULT_TTL = 300


@dataclasses.dataclass(frozen=True)
class Zone:
    id: str
    name: str
    private: bool = False

    @classmethod
    def from_route53(cls, data: Dict[str, Any]) -> "Zone":
        return cls(
            id=normalize_zone_id(data["Id"]),
            name=data["Name"],
            private=bool(data.get("Config", {}).get("PrivateZone")),
        )


@dataclasses.dataclass
class RecordSet:
    name: str
    type: str
    ttl: Optional[int] = None
    values: List[str] = dataclasses.field(default_factory=list)
    # Everything else in the Route 53 body (AliasTarget, SetIdentifier, Weight, ...),
    # kept so a DELETE can send back the record exactly as it exists.
    extra: Dict[str, Any] = dataclasses.field(default_factory=dict)

    @classmethod
    def from_route53(cls, data: Dict[str, Any]) -> "RecordSet":
        extra = {
            k: v
            for k, v in data.items()
            if k not in ("Name", "Type", "TTL", "ResourceRecords")
        }
        return cls(
            name=data["Name"],
            type=data["Type"],
            ttl=data.get("TTL"),
            values=[r["Value"] for r in data.get("ResourceRecords", [])],
            extra=extra,
        )

    def to_route53(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"Name": self.name, "Type": self.type}
        if self.ttl is not None:
            body["TTL"] = self.ttl
        if self.values:
            body["ResourceRecords"] = [{"Value": v} for v in self.values]
        body.update(self.extra)
        return body


@dataclasses.dataclass
class Change:
    action: str        # "UPSERT" or "DELETE"
    record_set: RecordSet

    def to_route53(self) -> Dict[str, Any]:
        return {"Action": self.action, "ResourceRecordSet": self.record_set.to_route53()}


@dataclasses.dataclass
class ChangeBatch:
    changes: List[Change] = dataclasses.field(default_factory=list)
    comment: Optional[str] = None

    def to_route53(self) -> Dict[str, Any]:
        batch: Dict[str, Any] = {"Changes": [c.to_route53() for c in self.changes]}
        if self.comment:
            batch["Comment"] = self.comment
        return batch


@dataclasses.dataclass
class ChangeInfo:
    id: str
    status: str        # "PENDING" or "INSYNC"
    submitted_at: Optional[datetime] = None

    @classmethod
    def from_route53(cls, data: Dict[str, Any]) -> "ChangeInfo":
        return cls(
            id=data["Id"],
            status=data["Status"],
            submitted_at=data.get("SubmittedAt"),
        )

    def __str__(self) -> str:
        text = f"{self.id} {self.status}"
        if self.submitted_at is not None:
            text += f" (submitted {self.submitted_at.isoformat()})"
        return text


def normalize_zone_id(zone_id: str) -> str:
    # Route 53 returns ids as "/hostedzone/Z1PA6795UKMFR9"
    return zone_id.rsplit("/", 1)[-1]


CONFIG_KEYS = {
    "hosted_zone_id": str,
    "hosted_zone_name": str,
    "hosted_zone_type": str,
    "record_name": str,
    "record_type": str,
    "value": list,
    "value_from": str,
    "value_from_url": str,
    "ip_address_type": str,
    "ttl": int,
    "comment": str,
    "wait": bool,
    "clear": bool,
}


def load_record_config(path: str) -> Dict[str, Any]:
    """
    Load record options from a YAML mapping.

    Keys are the long command-line option names with underscores, e.g.:

        record_name: service.example.com
        value_from: auto
        clear: true
    """
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except OSError as e:
        raise ConfigError(f"Could not read config {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"Config {path} is not valid YAML: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError("Record config must be a YAML mapping")

    config: Dict[str, Any] = {}
    for key, raw in data.items():
        if key not in CONFIG_KEYS:
            raise ConfigError(f"Unknown key in record config: {key}")
        if raw is None:
            # A key left blank means "not set"; the flag or default applies.
            continue
        expected = CONFIG_KEYS[key]
        if expected is list:
            # A single value may be written as a scalar.
            value = raw if isinstance(raw, list) else [raw]
            value = [str(v) for v in value if v is not None]
            if value:
                config[key] = value
        elif expected is bool:
            if not isinstance(raw, bool):
                raise ConfigError(f"'{key}' must be true or false")
            config[key] = raw
        elif expected is int:
            if isinstance(raw, bool) or not isinstance(raw, int):
                raise ConfigError(f"'{key}' must be an integer")
            config[key] = raw
        else:
            config[key] = str(raw)
    return config


class Route53Client:
    def __init__(self, client: Any = None, region_name: Optional[str] = None):
        if client is None:
            region_name = region_name or boto3.session.Session().region_name or "us-east-1"
            client = boto3.client("route53", region_name=region_name)
        self._r53 = client

    def list_hosted_zones(self) -> Tuple[List[Zone], bool]:
        try:
            resp = self._r53.list_hosted_zones()
        except (BotoCoreError, ClientError) as e:
            raise ProviderError(f"Could not list hosted zones: {e}") from e
        zones = [Zone.from_route53(z) for z in resp.get("HostedZones", [])]
        return zones, bool(resp.get("IsTruncated"))

    def list_record_sets(self, zone_id: str) -> Tuple[List[RecordSet], bool]:
        try:
            resp = self._r53.list_resource_record_sets(HostedZoneId=zone_id)
        except (BotoCoreError, ClientError) as e:
            raise ProviderError(f"Could not list record sets in {zone_id}: {e}") from e
        records = [RecordSet.from_route53(r) for r in resp.get("ResourceRecordSets", [])]
        return records, bool(resp.get("IsTruncated"))

    def change_record_sets(self, zone_id: str, batch: ChangeBatch) -> ChangeInfo:
        try:
            resp = self._r53.change_resource_record_sets(
                HostedZoneId=zone_id,
                ChangeBatch=batch.to_route53(),
            )
        except (BotoCoreError, ClientError) as e:
            raise ProviderError(f"Could not change record sets in {zone_id}: {e}") from e
        return ChangeInfo.from_route53(resp["ChangeInfo"])

    def get_change(self, change_id: str) -> ChangeInfo:
        try:
            resp = self._r53.get_change(Id=change_id)
        except (BotoCoreError, ClientError) as e:
            raise ProviderError(f"Could not poll change {change_id}: {e}") from e
        return ChangeInfo.from_route53(resp["ChangeInfo"])


class MetadataClient:
    """Instance/task metadata services and plain-text value URLs."""

    EC2_METADATA_URL = "http://169.254.169.254"

    def __init__(self, http: Optional[httpx.Client] = None, env: Optional[Dict[str, str]] = None):
        self._http = http or httpx.Client(timeout=10.0)
        self._env = os.environ if env is None else env

    def get_ecs_task_metadata(self) -> Optional[Dict[str, Any]]:
        # Task data lives at the same place in the V3 and V4 endpoints.
        base = self._env.get("ECS_CONTAINER_METADATA_URI_V4") or self._env.get(
            "ECS_CONTAINER_METADATA_URI"
        )
        if not base:
            return None
        url = f"{base.rstrip('/')}/task"
        try:
            resp = self._http.get(url)
        except (httpx.RequestError, httpx.InvalidURL) as e:
            raise FetchError(f"Request to {url} failed: {e}") from e
        if resp.status_code != 200:
            raise FetchError(
                f"Response from {url} returned non-200 status code: {resp.status_code}"
            )
        try:
            return resp.json()
        except ValueError as e:
            raise FetchError(f"Response from {url} is not valid JSON: {e}") from e

    def get_ec2_metadata(self, path: str) -> Optional[str]:
        """Return a meta-data field, or None when IMDS is unreachable or has no such field."""
        try:
            token = self._http.put(
                f"{self.EC2_METADATA_URL}/latest/api/token",
                headers={"X-aws-ec2-metadata-token-ttl-seconds": "21600"},
                timeout=2.0,
            )
            if token.status_code != 200:
                return None
            resp = self._http.get(
                f"{self.EC2_METADATA_URL}/latest/meta-data/{path}",
                headers={"X-aws-ec2-metadata-token": token.text},
                timeout=2.0,
            )
        except httpx.RequestError:
            return None
        if resp.status_code != 200:
            return None
        value = resp.text.strip()
        return value or None

    def fetch_url(self, url: str) -> str:
        try:
            resp = self._http.get(url)
        except (httpx.RequestError, httpx.InvalidURL) as e:
            raise FetchError(f"Request to {url} failed: {e}") from e
        if resp.status_code != 200:
            raise FetchError(
                f"Response from {url} returned non-200 status code: {resp.status_code}"
            )
        return resp.text.strip()
