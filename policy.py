"""
Escalation policy: decides which addresses, prefixes or ASNs get blocked.

Modes:
    - ip:     every banned address qualifies (mirrors the jail 1:1)
    - prefix: a BGP prefix qualifies with >= min_prefix_count banned addresses
    - asn:    an ASN qualifies with >= asn_min_ips addresses AND
              >= asn_min_prefixes distinct prefixes AND no sampled country
              code in asn_exclude_cc. A single excluded sample vetoes the ASN.
              Every prefix of a qualifying ASN is blocked, not only the busy ones.

Decisions are a pure function of the aggregated groups and the thresholds.
"""

import ipaddress
from dataclasses import dataclass, field
from typing import FrozenSet, Iterable, List, Optional, Tuple

from aggregation import Aggregation, AsnGroup, PrefixGroup
from ban_source import sorted_addresses
from config import (
    DEFAULT_ASN_EXCLUDE_CC,
    DEFAULT_ASN_MIN_IPS,
    DEFAULT_ASN_MIN_PREFIXES,
    DEFAULT_MIN_PREFIX_COUNT,
    EscalationConfig,
)

KIND_ADDRESS = "address"
KIND_PREFIX = "prefix"
KIND_ASN = "asn"


@dataclass(frozen=True)
class EscalationPolicy:
    mode: str = "ip"
    min_prefix_count: int = DEFAULT_MIN_PREFIX_COUNT
    asn_min_ips: int = DEFAULT_ASN_MIN_IPS
    asn_min_prefixes: int = DEFAULT_ASN_MIN_PREFIXES
    asn_exclude_cc: FrozenSet[str] = frozenset({DEFAULT_ASN_EXCLUDE_CC})

    @classmethod
    def from_config(cls, config: EscalationConfig) -> "EscalationPolicy":
        return cls(
            mode=config.mode,
            min_prefix_count=config.min_prefix_count,
            asn_min_ips=config.asn_min_ips,
            asn_min_prefixes=config.asn_min_prefixes,
            asn_exclude_cc=frozenset(cc.upper() for cc in config.asn_exclude_cc),
        )


@dataclass(frozen=True)
class QualificationDecision:
    kind: str
    target: str
    qualifies: bool
    reason: str
    # What gets blocked when this decision qualifies
    block_targets: Tuple[str, ...] = ()


@dataclass
class PolicyOutcome:
    mode: str
    decisions: List[QualificationDecision] = field(default_factory=list)

    @property
    def qualifying(self) -> List[QualificationDecision]:
        return [d for d in self.decisions if d.qualifies]

    @property
    def block_targets(self) -> List[str]:
        """Unique targets of all qualifying decisions, sorted numerically."""
        targets = {t for d in self.qualifying for t in d.block_targets}
        if self.mode == "ip":
            return sorted_addresses(targets)
        return sorted_networks(targets)


def sorted_networks(prefixes: Iterable[str]) -> List[str]:
    def key(prefix):
        network = ipaddress.ip_network(prefix, strict=False)
        return (network.version, int(network.network_address), network.prefixlen)

    return sorted(set(prefixes), key=key)


def qualify_addresses(banned: Iterable[str]) -> List[QualificationDecision]:
    return [
        QualificationDecision(
            kind=KIND_ADDRESS,
            target=address,
            qualifies=True,
            reason="banned by fail2ban",
            block_targets=(address,),
        )
        for address in sorted_addresses(banned)
    ]


def qualify_prefix(group: PrefixGroup, min_prefix_count: int) -> QualificationDecision:
    qualifies = group.member_count >= min_prefix_count
    comparison = ">=" if qualifies else "<"
    return QualificationDecision(
        kind=KIND_PREFIX,
        target=group.prefix,
        qualifies=qualifies,
        reason=f"ips={group.member_count} {comparison} {min_prefix_count}",
        block_targets=(group.prefix,),
    )


def qualify_asn(group: AsnGroup, policy: EscalationPolicy) -> QualificationDecision:
    reasons = []
    excluded = sorted(group.country_codes & policy.asn_exclude_cc)
    if excluded:
        reasons.append(f"excluded country {','.join(excluded)} observed")
    if group.member_count < policy.asn_min_ips:
        reasons.append(f"ips={group.member_count} < {policy.asn_min_ips}")
    if group.distinct_prefix_count < policy.asn_min_prefixes:
        reasons.append(f"prefixes={group.distinct_prefix_count} < {policy.asn_min_prefixes}")

    qualifies = not reasons
    if qualifies:
        reasons.append(
            f"ips={group.member_count} >= {policy.asn_min_ips}, "
            f"prefixes={group.distinct_prefix_count} >= {policy.asn_min_prefixes}"
        )
    return QualificationDecision(
        kind=KIND_ASN,
        target=f"AS{group.asn}",
        qualifies=qualifies,
        reason="; ".join(reasons),
        block_targets=group.prefixes,
    )


def evaluate(
    policy: EscalationPolicy,
    banned: Iterable[str],
    aggregation: Aggregation,
    mode: Optional[str] = None,
) -> PolicyOutcome:
    """
    Applies the policy for `mode` (defaults to policy.mode).

    Prefix and ASN decisions are listed busiest first, first-seen on ties.
    """
    mode = mode or policy.mode
    outcome = PolicyOutcome(mode=mode)
    if mode == "ip":
        outcome.decisions = qualify_addresses(banned)
    elif mode == "prefix":
        outcome.decisions = [
            qualify_prefix(group, policy.min_prefix_count)
            for group in aggregation.ranked_prefixes()
        ]
    elif mode == "asn":
        outcome.decisions = [
            qualify_asn(group, policy) for group in aggregation.ranked_asns()
        ]
    else:
        raise ValueError(f"Unknown mode: {mode}")
    return outcome
