"""Groups enrichment records by BGP prefix and by ASN."""

import logging
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Iterable, List, Tuple

from enrichment import EnrichmentRecord

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PrefixGroup:
    prefix: str
    asn: int
    as_name: str
    member_count: int


@dataclass(frozen=True)
class AsnGroup:
    """
    All records sharing one ASN.

    Attributes:
        member_count: Distinct banned addresses announced by this ASN
        prefixes: Distinct prefixes seen for this ASN, in first-seen order
        country_codes: Every country code sampled for this ASN
    """

    asn: int
    as_name: str
    member_count: int
    prefixes: Tuple[str, ...]
    country_codes: FrozenSet[str]

    @property
    def distinct_prefix_count(self) -> int:
        return len(self.prefixes)


@dataclass(frozen=True)
class PrefixConflict:
    """Same prefix reported under two different ASN/name pairs."""

    prefix: str
    previous: Tuple[int, str]
    current: Tuple[int, str]


@dataclass
class Aggregation:
    prefix_groups: Dict[str, PrefixGroup] = field(default_factory=dict)
    asn_groups: Dict[int, AsnGroup] = field(default_factory=dict)
    conflicts: List[PrefixConflict] = field(default_factory=list)

    def ranked_prefixes(self) -> List[PrefixGroup]:
        """Prefix groups by member count, descending; ties keep first-seen order."""
        return sorted(
            self.prefix_groups.values(), key=lambda g: g.member_count, reverse=True
        )

    def ranked_asns(self) -> List[AsnGroup]:
        """ASN groups by member count, descending; ties keep first-seen order."""
        return sorted(self.asn_groups.values(), key=lambda g: g.member_count, reverse=True)


def aggregate(records: Iterable[EnrichmentRecord]) -> Aggregation:
    """
    Builds the per-prefix and per-ASN views of an enrichment table.

    A prefix is keyed on the CIDR alone. If the resolver reports the same
    prefix under different ASN/name pairs, the last one observed is kept and
    the disagreement is recorded in Aggregation.conflicts.
    """
    prefix_members: Dict[str, set] = {}
    prefix_owner: Dict[str, Tuple[int, str]] = {}
    asn_members: Dict[int, set] = {}
    asn_prefixes: Dict[int, Dict[str, None]] = {}
    asn_countries: Dict[int, set] = {}
    asn_names: Dict[int, str] = {}
    result = Aggregation()

    for record in records:
        owner = (record.asn, record.as_name)
        previous = prefix_owner.get(record.bgp_prefix)
        if previous is not None and previous != owner:
            logger.warning(
                f"Prefix {record.bgp_prefix} reported as AS{previous[0]} ({previous[1]}) "
                f"and AS{owner[0]} ({owner[1]}); keeping the latter"
            )
            result.conflicts.append(PrefixConflict(record.bgp_prefix, previous, owner))
        prefix_owner[record.bgp_prefix] = owner
        prefix_members.setdefault(record.bgp_prefix, set()).add(record.address)

        asn_members.setdefault(record.asn, set()).add(record.address)
        asn_prefixes.setdefault(record.asn, {})[record.bgp_prefix] = None
        if record.country_code:
            asn_countries.setdefault(record.asn, set()).add(record.country_code.upper())
        asn_names[record.asn] = record.as_name

    for prefix, members in prefix_members.items():
        asn, as_name = prefix_owner[prefix]
        result.prefix_groups[prefix] = PrefixGroup(
            prefix=prefix, asn=asn, as_name=as_name, member_count=len(members)
        )

    for asn, members in asn_members.items():
        result.asn_groups[asn] = AsnGroup(
            asn=asn,
            as_name=asn_names[asn],
            member_count=len(members),
            prefixes=tuple(asn_prefixes[asn]),
            country_codes=frozenset(asn_countries.get(asn, ())),
        )

    logger.info(
        f"Aggregated {len(result.prefix_groups)} prefix(es) across "
        f"{len(result.asn_groups)} ASN(s)"
    )
    return result
