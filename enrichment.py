"""
Enrichment table builder: joins raw WHOIS records back to the banned set.

Raw lines follow the Cymru verbose column order

    asn | address | bgp_prefix | cc | registry | allocated | as_name

either pipe-delimited (Cymru) or comma-delimited (IPInfo rendering). The
layout is detected once from the first data row of a batch and then applied to
every row with fixed column offsets.

Rows that fail validation are dropped and counted by reason; partial
resolution is the normal case and never raises.
"""

import csv
import ipaddress
import logging
import re
from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from typing import IO, Iterable, List, Optional, Set

from ban_source import normalize_address, sorted_addresses

logger = logging.getLogger(__name__)

FIELD_COUNT = 7
CSV_HEADER = ["ip", "asn", "as_name", "bgp_prefix", "cc", "allocated"]
_WHITESPACE = re.compile(r"\s+")

# Drop reasons, in the order they are checked
DROP_MALFORMED = "malformed row"
DROP_ASN = "non-numeric asn"
DROP_ADDRESS = "invalid address"
DROP_PREFIX = "invalid bgp prefix"
DROP_NOT_BANNED = "address not in ban list"
DROP_DUPLICATE = "duplicate address"
DROP_OUTSIDE_PREFIX = "address outside its prefix"


class RecordLayout(Enum):
    PIPE = "|"
    COMMA = ","

    def split(self, line: str) -> Optional[List[str]]:
        parts = line.split(self.value, FIELD_COUNT - 1)
        if len(parts) < FIELD_COUNT:
            return None
        return [clean_field(p) for p in parts]


def clean_field(value: str) -> str:
    return _WHITESPACE.sub(" ", value).strip()


def _is_header(line: str, delimiter: str) -> bool:
    return line.split(delimiter, 1)[0].strip().upper() == "AS"


def detect_layout(lines: Iterable[str]) -> Optional[RecordLayout]:
    """
    Picks the record layout from the first data row.

    Banner lines ("Bulk mode; whois.cymru.com [...]") carry no delimiter and
    the column header starts with "AS"; both are skipped. Pipes win over
    commas because AS names may contain commas.
    """
    for line in lines:
        if not line.strip():
            continue
        for layout in (RecordLayout.PIPE, RecordLayout.COMMA):
            if layout.value in line and not _is_header(line, layout.value):
                return layout
    return None


@dataclass(frozen=True)
class EnrichmentRecord:
    address: str
    asn: int
    as_name: str
    bgp_prefix: str
    country_code: str
    allocation_date: str

    def csv_row(self) -> List[str]:
        return [
            self.address,
            str(self.asn),
            self.as_name,
            self.bgp_prefix,
            self.country_code,
            self.allocation_date,
        ]


@dataclass
class EnrichmentTable:
    """One validated record per resolvable banned address."""

    banned: Set[str]
    records: List[EnrichmentRecord] = field(default_factory=list)
    layout: Optional[RecordLayout] = None
    drop_reasons: Counter = field(default_factory=Counter)

    @property
    def dropped_rows(self) -> int:
        return sum(self.drop_reasons.values())

    @property
    def enriched_addresses(self) -> Set[str]:
        return {r.address for r in self.records}

    @property
    def unresolved(self) -> List[str]:
        """Banned addresses that ended up without a record."""
        return sorted_addresses(self.banned - self.enriched_addresses)

    def summary(self) -> str:
        return f"{len(self.records)} enriched of {len(self.banned)} banned"


def parse_record(parts: List[str]) -> EnrichmentRecord:
    """Builds a record from cleaned, already validated columns."""
    asn, address, prefix, cc, _registry, allocated, as_name = parts
    return EnrichmentRecord(
        address=address,
        asn=int(asn),
        as_name=clean_field(as_name.replace(",", " ")),
        bgp_prefix=prefix,
        country_code=cc.upper(),
        allocation_date=allocated,
    )


def _validate(parts: List[str]):
    """Returns (record, None) or (None, drop_reason)."""
    asn, address, prefix = parts[0], parts[1], parts[2]
    if not asn.isdigit():
        return None, DROP_ASN
    normalized = normalize_address(address)
    if not normalized:
        return None, DROP_ADDRESS
    if "/" not in prefix:
        return None, DROP_PREFIX
    try:
        network = ipaddress.ip_network(prefix, strict=False)
    except ValueError:
        return None, DROP_PREFIX
    if ipaddress.ip_address(normalized) not in network:
        return None, DROP_OUTSIDE_PREFIX

    parts = list(parts)
    parts[1] = normalized
    parts[2] = str(network)
    return parse_record(parts), None


def build_enrichment_table(raw_lines: Iterable[str], banned: Set[str]) -> EnrichmentTable:
    """
    Parses resolver output into an EnrichmentTable for the given banned set.

    The first record for an address wins; later ones count as duplicates.
    """
    raw_lines = list(raw_lines)
    table = EnrichmentTable(banned=set(banned))
    table.layout = detect_layout(raw_lines)
    if table.layout is None:
        if banned:
            logger.warning(f"No parseable WHOIS records: {table.summary()}")
        return table

    delimiter = table.layout.value
    seen: Set[str] = set()
    for line in raw_lines:
        if delimiter not in line or _is_header(line, delimiter):
            continue
        parts = table.layout.split(line)
        if parts is None:
            table.drop_reasons[DROP_MALFORMED] += 1
            logger.debug(f"Dropping malformed row: {line!r}")
            continue

        record, reason = _validate(parts)
        if record is not None and record.address not in table.banned:
            record, reason = None, DROP_NOT_BANNED
        elif record is not None and record.address in seen:
            record, reason = None, DROP_DUPLICATE
        if record is None:
            table.drop_reasons[reason] += 1
            logger.debug(f"Dropping row ({reason}): {line!r}")
            continue

        seen.add(record.address)
        table.records.append(record)

    logger.info(
        f"Enrichment: {table.summary()} "
        f"({table.dropped_rows} row(s) dropped, {len(table.unresolved)} unresolved)"
    )
    if table.drop_reasons:
        logger.debug(f"Drop reasons: {dict(table.drop_reasons)}")
    return table


def write_enriched_csv(records: Iterable[EnrichmentRecord], stream: IO[str]):
    """Writes ips_enriched.csv content: header plus one row per record."""
    writer = csv.writer(stream, lineterminator="\n")
    writer.writerow(CSV_HEADER)
    for record in records:
        writer.writerow(record.csv_row())
