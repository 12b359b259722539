"""Tests for port record normalization."""

import pytest

from portscope.errors import InvalidPortRecord
from portscope.models import AttributionProvenance, PortRecord, Protocol, Source
from portscope.normalizer import canonical_host_ip, normalize, normalize_many


class TestCanonicalHostIp:
    """Tests for bind address canonicalization."""

    @pytest.mark.parametrize("value", ["::", "[::]", "*", "", None, "0.0.0.0", "0:0:0:0:0:0:0:0"])
    def test_wildcards_become_ipv4_any(self, value):
        """Every wildcard form normalizes to 0.0.0.0."""
        assert canonical_host_ip(value) == "0.0.0.0"

    def test_brackets_and_zone_stripped(self):
        assert canonical_host_ip("[::1]") == "::1"
        assert canonical_host_ip("fe80::1%eth0") == "fe80::1"

    def test_ipv6_compressed(self):
        assert canonical_host_ip("2001:0db8:0000:0000:0000:0000:0000:0001") == "2001:db8::1"

    def test_ipv4_mapped_unwrapped(self):
        assert canonical_host_ip("::ffff:192.168.1.10") == "192.168.1.10"

    def test_non_ip_lowercased(self):
        assert canonical_host_ip("LocalHost") == "localhost"


class TestNormalize:
    """Tests for normalize()."""

    def test_defaults(self):
        """Test protocol and owner defaults."""
        record = normalize({"host_port": 8080})
        assert record.protocol == Protocol.TCP
        assert record.owner == "unknown"
        assert record.host_ip == "0.0.0.0"
        assert record.source == Source.OS
        assert record.attribution_provenance == AttributionProvenance.OBSERVED

    def test_port_string_coerced(self):
        assert normalize({"host_port": " 443 "}).host_port == 443

    @pytest.mark.parametrize("port", [0, 65536, -1, "http", None])
    def test_invalid_port_rejected(self, port):
        """Invalid raw ports never produce a record."""
        with pytest.raises(InvalidPortRecord):
            normalize({"host_port": port})

    def test_invalid_port_is_value_error(self):
        with pytest.raises(ValueError):
            normalize({"host_port": 0})

    def test_pids_coerced_and_deduplicated(self):
        """Non-numeric and non-positive pids are dropped."""
        record = normalize({"host_port": 22, "pids": ["812", 0, -4, "abc", 812, 900]})
        assert record.pids == [812, 900]
        assert record.pid == 812

    def test_explicit_pid_wins(self):
        record = normalize({"host_port": 22, "pid": 900, "pids": [812]})
        assert record.pid == 900
        assert record.pids == [812]

    def test_pid_only_fills_pids(self):
        record = normalize({"host_port": 22, "pid": "31"})
        assert record.pid == 31
        assert record.pids == [31]

    def test_protocol_family_suffix_stripped(self):
        assert normalize({"host_port": 22, "protocol": "TCP6"}).protocol == Protocol.TCP
        assert normalize({"host_port": 53, "protocol": "udp6"}).protocol == Protocol.UDP

    def test_unknown_protocol_rejected(self):
        with pytest.raises(InvalidPortRecord):
            normalize({"host_port": 22, "protocol": "sctp"})

    def test_blank_owner_becomes_unknown(self):
        assert normalize({"host_port": 22, "owner": "  "}).owner == "unknown"

    def test_idempotent(self):
        """Normalizing a normalized record is a no-op."""
        raw = {
            "host_port": "8080",
            "host_ip": "[::]",
            "protocol": "tcp6",
            "pids": ["7", "7", "9"],
            "source": "container",
            "container_id": "abc",
            "internal": 1,
            "attribution_provenance": "reclassified-pid",
        }
        once = normalize(raw)
        twice = normalize(once)
        assert twice == once
        assert normalize(once.model_dump()) == once

    def test_key_for_published_and_internal(self):
        published = normalize({"host_port": 80, "host_ip": "::"})
        internal = normalize({"host_port": 80, "internal": True, "container_id": "abc", "source": "container"})
        assert published.key == ("0.0.0.0", 80, "tcp")
        assert internal.key == ("abc", 80, "internal")


class TestNormalizeMany:
    """Tests for batch normalization."""

    def test_invalid_records_dropped(self):
        records = normalize_many([{"host_port": 22}, {"host_port": 0}, {"host_port": "x"}, {"host_port": 53}])
        assert [r.host_port for r in records] == [22, 53]

    def test_accepts_records(self):
        record = PortRecord(host_port=22)
        assert normalize_many([record]) == [record]
