"""
Plan emitter: renders qualifying targets as an ipset/iptables action plan
and as a human-readable recommendation report.

The plan is idempotent by construction:
    - create-collection:  ipset create ... -exist      (create if absent)
    - add-member:         ipset add ... timeout N -exist (add or refresh expiry)
    - install-drop-rule:  iptables -C ... || iptables -I ... (check, then insert)

Every member carries a finite timeout so escalated blocks expire on their own.
"""

import csv
import io
import ipaddress
import shlex
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional, Sequence

from aggregation import Aggregation
from enrichment import EnrichmentTable
from policy import KIND_ASN, EscalationPolicy, PolicyOutcome

OP_CREATE_COLLECTION = "create-collection"
OP_ADD_MEMBER = "add-member"
OP_INSTALL_DROP_RULE = "install-drop-rule"

SET_NAMES = {"ip": "f2b_ips", "prefix": "f2b_prefixes", "asn": "f2b_asn"}
REPORT_EXAMPLES = 10
ASN_SUMMARY_HEADER = ["asn", "as_name", "count", "prefixes", "countries"]


def collection_name(mode: str, family: int = 4) -> str:
    name = SET_NAMES[mode]
    return name if family == 4 else f"{name}6"


@dataclass(frozen=True)
class PlanOperation:
    kind: str
    collection: str
    target: str = ""
    ttl: int = 0
    family: int = 4
    set_type: str = "hash:ip"
    annotation: str = ""

    @property
    def _iptables(self) -> str:
        return "iptables" if self.family == 4 else "ip6tables"

    def _rule(self, action: str) -> List[str]:
        return [
            self._iptables,
            action,
            "INPUT",
            "-m",
            "set",
            "--match-set",
            self.collection,
            "src",
            "-j",
            "DROP",
        ]

    def argv(self) -> List[str]:
        """The command that performs this operation."""
        if self.kind == OP_CREATE_COLLECTION:
            cmd = ["ipset", "create", self.collection, self.set_type]
            if self.family == 6:
                cmd += ["family", "inet6"]
            return cmd + ["timeout", str(self.ttl), "-exist"]
        if self.kind == OP_ADD_MEMBER:
            return [
                "ipset",
                "add",
                self.collection,
                self.target,
                "timeout",
                str(self.ttl),
                "-exist",
            ]
        if self.kind == OP_INSTALL_DROP_RULE:
            return self._rule("-I")
        raise ValueError(f"Unknown plan operation: {self.kind}")

    def check_argv(self) -> Optional[List[str]]:
        """For drop rules, the command that succeeds if the rule already exists."""
        if self.kind == OP_INSTALL_DROP_RULE:
            return self._rule("-C")
        return None

    def render(self) -> str:
        line = shlex.join(self.argv())
        check = self.check_argv()
        if check:
            line = f"{shlex.join(check)} 2>/dev/null || {line}"
        if self.annotation:
            line += f"  # {self.annotation}"
        return line


@dataclass
class ActionPlan:
    jail: str
    mode: str
    ttl: int
    operations: List[PlanOperation] = field(default_factory=list)

    @property
    def add_members(self) -> List[PlanOperation]:
        return [op for op in self.operations if op.kind == OP_ADD_MEMBER]

    @property
    def collections(self) -> List[str]:
        return [
            op.collection for op in self.operations if op.kind == OP_CREATE_COLLECTION
        ]

    def is_empty(self) -> bool:
        return not self.operations


def build_action_plan(
    outcome: PolicyOutcome, jail: str, ttl: int, mode: Optional[str] = None
) -> ActionPlan:
    """
    Orders operations per address family: create set, add members, drop rule.

    IPv6 targets go to a separate `<set>6` collection with `family inet6`.
    """
    if ttl < 1:
        raise ValueError("ttl must be a positive number of seconds")
    mode = mode or outcome.mode
    plan = ActionPlan(jail=jail, mode=mode, ttl=ttl)
    set_type = "hash:ip" if mode == "ip" else "hash:net"
    annotation = f"reason=f2b:{mode} jail={jail}"

    targets = outcome.block_targets
    for family in (4, 6):
        members = [
            t for t in targets if ipaddress.ip_network(t, strict=False).version == family
        ]
        if not members:
            continue
        name = collection_name(mode, family)
        plan.operations.append(
            PlanOperation(
                OP_CREATE_COLLECTION, name, ttl=ttl, family=family, set_type=set_type
            )
        )
        plan.operations.extend(
            PlanOperation(
                OP_ADD_MEMBER,
                name,
                target=member,
                ttl=ttl,
                family=family,
                set_type=set_type,
                annotation=annotation,
            )
            for member in members
        )
        plan.operations.append(
            PlanOperation(OP_INSTALL_DROP_RULE, name, family=family, set_type=set_type)
        )
    return plan


def render_script(plan: ActionPlan) -> str:
    """apply_cmds.sh: safe to run any number of times."""
    lines = [
        "#!/usr/bin/env bash",
        "set -euo pipefail",
        f"# f2b-escalate plan: jail={plan.jail} mode={plan.mode} timeout={plan.ttl}",
    ]
    if plan.is_empty():
        lines.append("# nothing to apply")
    lines.extend(op.render() for op in plan.operations)
    return "\n".join(lines) + "\n"


def utc_timestamp(now: Optional[datetime] = None) -> str:
    now = now or datetime.now(timezone.utc)
    return now.strftime("%Y-%m-%dT%H:%M:%SZ")


def _sample_adds(plan: ActionPlan, limit: int = REPORT_EXAMPLES) -> List[str]:
    return [f"   {op.render()}" for op in plan.add_members[:limit]]


def _recommended_actions(
    policy: EscalationPolicy,
    aggregation: Aggregation,
    outcome: PolicyOutcome,
    plan: ActionPlan,
) -> List[str]:
    names = ", ".join(plan.collections) or collection_name(plan.mode)
    lines = []
    if plan.mode == "ip":
        lines += [
            "1) Mirror Fail2ban IPs into ipset for perimeter DROP with auto-expire.",
            f"   - Set name: {names}",
            "   - Sample entries:",
        ]
        lines += _sample_adds(plan) or ["   (no banned IPs)"]
    elif plan.mode == "prefix":
        lines += [
            "1) Block observed BGP prefixes for banned IPs (auto-expire).",
            f"   - Set name: {names}",
            f"   - Threshold: banned IPs per prefix >= {policy.min_prefix_count}",
            "   - Top prefixes (examples):",
        ]
        qualifying = outcome.qualifying[:REPORT_EXAMPLES]
        for decision in qualifying:
            group = aggregation.prefix_groups[decision.target]
            lines.append(
                f"   {group.member_count:6d} {group.prefix}  AS{group.asn} {group.as_name}"
            )
        if not qualifying:
            lines.append("   (no prefix met the threshold)")
        lines.append("   - Sample adds:")
        lines += _sample_adds(plan) or ["   (none)"]
    else:
        excluded = ",".join(sorted(policy.asn_exclude_cc)) or "(none)"
        lines += [
            "1) Ban all observed prefixes for ASNs meeting thresholds and not in excluded CCs.",
            f"   - Set name: {names}",
            f"   - Thresholds: unique IPs >= {policy.asn_min_ips} AND "
            f"unique prefixes >= {policy.asn_min_prefixes}",
            f"   - Exclude CCs: {excluded}",
            "   - Candidate ASNs (examples):",
        ]
        qualifying = outcome.qualifying[:REPORT_EXAMPLES]
        for decision in qualifying:
            group = aggregation.asn_groups[int(decision.target[2:])]
            lines.append(
                f"   {decision.target} {group.as_name} "
                f"ip={group.member_count} pf={group.distinct_prefix_count}"
            )
        if not qualifying:
            lines.append("   (no ASN met the thresholds)")
        vetoed = [
            d for d in outcome.decisions if not d.qualifies and "excluded country" in d.reason
        ]
        if vetoed:
            lines.append(f"   - Vetoed by country exclusion: {len(vetoed)} ASN(s)")
        lines.append("   - Sample adds:")
        lines += _sample_adds(plan) or ["   (none)"]
    return lines


def render_recommendations(
    jail: str,
    policy: EscalationPolicy,
    ttl: int,
    banned_count: int,
    outdir: str,
    table: Optional[EnrichmentTable] = None,
    aggregation: Optional[Aggregation] = None,
    outcome: Optional[PolicyOutcome] = None,
    plan: Optional[ActionPlan] = None,
    failure: Optional[str] = None,
    generated_at: Optional[datetime] = None,
) -> str:
    """
    recommendations.txt. Written for every run that got past configuration,
    including empty jails and runs whose enrichment failed.
    """
    lines = [
        f"Recommendations generated: {utc_timestamp(generated_at)} (UTC)",
        "",
        "Summary",
        "-------",
        f"Fail2ban jail:           {jail}",
        f"Mode selected:           {policy.mode}",
        f"Banned IPs (input):      {banned_count}",
    ]
    if table is not None:
        lines += [
            f"Enriched IPs (Cymru):    {len(table.records)}",
            f"Unresolved IPs:          {len(table.unresolved)}",
            f"Dropped WHOIS rows:      {table.dropped_rows}",
        ]
        for reason, count in sorted(table.drop_reasons.items()):
            lines.append(f"  - {reason}: {count}")
    if aggregation is not None:
        lines += [
            f"Unique BGP prefixes:     {len(aggregation.prefix_groups)}",
            f"Unique ASNs observed:    {len(aggregation.asn_groups)}",
        ]
        if aggregation.conflicts:
            lines.append(
                f"Prefix/ASN conflicts:    {len(aggregation.conflicts)} (last observed ASN kept)"
            )
            for conflict in aggregation.conflicts[:REPORT_EXAMPLES]:
                lines.append(
                    f"  - {conflict.prefix}: AS{conflict.previous[0]} -> AS{conflict.current[0]}"
                )
    lines.append(f"ipset timeout (seconds): {ttl}")
    lines.append("")

    if banned_count == 0:
        lines += [
            "Status",
            "------",
            f"0 banned IPs in jail '{jail}'. Nothing to do.",
        ]
        return "\n".join(lines) + "\n"

    if failure:
        lines += [
            "Status",
            "------",
            f"Enrichment unavailable: {failure}",
            "No plan was generated. Re-run once the WHOIS service is reachable.",
        ]
        return "\n".join(lines) + "\n"

    if table is not None and not table.records:
        lines += [
            "Status",
            "------",
            f"{table.summary()} (addresses may be unregistered or private-range).",
            "",
        ]

    lines += ["Recommended Actions", "-------------------"]
    if outcome is not None and plan is not None and aggregation is not None:
        lines += _recommended_actions(policy, aggregation, outcome, plan)
        lines.append(
            f"   - Qualifying: {len(outcome.qualifying)} of {len(outcome.decisions)} evaluated"
        )
    lines.append("")

    script = f"{outdir}/apply_cmds.sh"
    lines += [
        "Proposed Execution",
        "------------------",
        "A) Dry-run: review generated commands:",
        f"   cat {script}",
        "",
        "B) Apply: enforce at the edge via ipset + iptables:",
        f"   sudo bash {script}",
        "",
        "C) Verify: check counters and membership:",
        "   sudo ipset list",
        "   sudo iptables -S | grep match-set",
        "",
        "D) Rollback: remove set or wait for timeouts:",
    ]
    names = (plan.collections if plan is not None else []) or [collection_name(policy.mode)]
    for name in names:
        iptables = "ip6tables" if name.endswith("6") else "iptables"
        lines.append(
            f"   sudo {iptables} -D INPUT -m set --match-set {name} src -j DROP 2>/dev/null || true"
        )
        lines.append(f"   sudo ipset destroy {name} 2>/dev/null || true")
    return "\n".join(lines) + "\n"


def render_asn_qualifying(outcome: PolicyOutcome, aggregation: Aggregation) -> str:
    """asn_qualifying.txt: one ASN line followed by its PFX lines."""
    lines = []
    for decision in outcome.qualifying:
        if decision.kind != KIND_ASN:
            continue
        group = aggregation.asn_groups[int(decision.target[2:])]
        lines.append(
            f"ASN|{group.asn}|{group.as_name}|ip={group.member_count}|pf={group.distinct_prefix_count}"
        )
        lines += [f"PFX|{prefix}" for prefix in group.prefixes]
    return "".join(f"{line}\n" for line in lines)


def render_asn_summary(aggregation: Aggregation) -> str:
    """asn_summary.csv: busiest ASNs first."""
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(ASN_SUMMARY_HEADER)
    for group in aggregation.ranked_asns():
        writer.writerow(
            [
                group.asn,
                group.as_name,
                group.member_count,
                group.distinct_prefix_count,
                " ".join(sorted(group.country_codes)),
            ]
        )
    return buffer.getvalue()


def render_lines(items: Sequence[str]) -> str:
    return "".join(f"{item}\n" for item in items)
