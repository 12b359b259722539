"""Canonicalization and validation of port records."""

import ipaddress
import logging
from collections.abc import Iterable, Mapping
from enum import Enum
from typing import Any

from pydantic import ValidationError

from portscope.errors import InvalidPortRecord
from portscope.models import WILDCARD_IP, PortRecord

logger = logging.getLogger(__name__)

WILDCARD_FORMS = frozenset({"", "*", "::", "[::]", "0.0.0.0", "0:0:0:0:0:0:0:0"})


def canonical_host_ip(host_ip: Any) -> str:
    """Canonicalize a bind address. Every wildcard form becomes 0.0.0.0."""
    if host_ip is None:
        return WILDCARD_IP
    value = str(host_ip).strip()
    if value in WILDCARD_FORMS:
        return WILDCARD_IP
    if value.startswith("[") and value.endswith("]"):
        value = value[1:-1]
    value = value.split("%", 1)[0]  # zone index, e.g. fe80::1%eth0

    try:
        addr = ipaddress.ip_address(value)
    except ValueError:
        return value.lower()

    if isinstance(addr, ipaddress.IPv6Address) and addr.ipv4_mapped is not None:
        addr = addr.ipv4_mapped
    if addr.is_unspecified:
        return WILDCARD_IP
    return str(addr)


def _plain(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


def _coerce_pid(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        pid = int(str(value).strip())
    except (TypeError, ValueError):
        return None
    return pid if pid > 0 else None


def _coerce_pids(values: Any) -> list[int]:
    if values is None:
        return []
    if isinstance(values, (str, bytes, int)):
        values = [values]
    pids: list[int] = []
    for value in values:
        pid = _coerce_pid(value)
        if pid is not None and pid not in pids:
            pids.append(pid)
    return pids


def _coerce_port(value: Any) -> int:
    try:
        port = int(str(value).strip())
    except (TypeError, ValueError):
        raise InvalidPortRecord(f"host_port is not numeric: {value!r}")
    if not 1 <= port <= 65535:
        raise InvalidPortRecord(f"host_port out of range: {port}")
    return port


def normalize(raw: Mapping[str, Any] | PortRecord) -> PortRecord:
    """Build a canonical PortRecord from a raw mapping (or an existing record).

    Raises:
        InvalidPortRecord: if the port is missing or outside 1-65535, or
            an enum field holds an unknown value.
    """
    data = raw.model_dump(mode="json") if isinstance(raw, PortRecord) else dict(raw)

    pid = _coerce_pid(data.get("pid"))
    pids = _coerce_pids(data.get("pids"))
    if pid is not None and not pids:
        pids = [pid]
    primary = pid if pid is not None else (pids[0] if pids else None)

    owner = str(data.get("owner") or "").strip() or "unknown"
    protocol = str(_plain(data.get("protocol")) or "tcp").strip().lower()
    if protocol.endswith("6"):
        protocol = protocol[:-1]

    fields = {
        key: data[key]
        for key in PortRecord.model_fields
        if key in data and data[key] is not None
    }
    fields.update(
        owner=owner,
        protocol=protocol,
        host_ip=canonical_host_ip(data.get("host_ip")),
        host_port=_coerce_port(data.get("host_port")),
        pid=primary,
        pids=pids,
        internal=bool(data.get("internal") or False),
    )
    if fields.get("target") is not None:
        fields["target"] = str(fields["target"])
    if fields.get("created") is not None:
        fields["created"] = str(fields["created"])

    try:
        return PortRecord(**fields)
    except ValidationError as e:
        raise InvalidPortRecord(str(e)) from e


def normalize_many(raws: Iterable[Mapping[str, Any] | PortRecord]) -> list[PortRecord]:
    """Normalize a batch, dropping records that fail validation."""
    records = []
    for raw in raws:
        try:
            records.append(normalize(raw))
        except InvalidPortRecord as e:
            logger.debug(f"Dropping invalid port record: {e}")
    return records
