#!/usr/bin/env python3
"""
Escalates Fail2ban bans from single addresses to prefixes or ASNs.

For one jail: read the ban list, enrich every address with Team Cymru ASN and
BGP prefix data, aggregate, apply the selected policy and emit an idempotent
ipset/iptables plan plus a recommendation report. Nothing touches the
firewall unless --apply is given.
"""

import argparse
import io
import logging
import os
import subprocess
import sys
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from aggregation import Aggregation, aggregate
from artifact_store import ArtifactStore, StorageError, create_artifact_store
from ban_source import BanSource, Fail2banBanSource, FileBanSource, sorted_addresses
from config import (
    DEFAULT_OUTDIR,
    ConfigArgumentParser,
    EscalationConfig,
    add_common_arguments,
)
from enrichment import EnrichmentTable, build_enrichment_table, write_enriched_csv
from errors import ConfigurationError, DependencyMissing, ResolutionUnavailable
from firewall import FirewallPlanApplier, IpsetFirewallApplier, ScriptFirewallApplier
from plan_emitter import (
    ActionPlan,
    build_action_plan,
    render_asn_qualifying,
    render_asn_summary,
    render_lines,
    render_recommendations,
    render_script,
)
from policy import EscalationPolicy, PolicyOutcome, evaluate
from slack_client import SlackBlock, SlackClient
from whois_resolver import BulkResolver, create_resolver

EXIT_SUCCESS = 0
EXIT_CONFIG_ERROR = 1
EXIT_DEPENDENCY_MISSING = 2
EXIT_RESOLUTION_UNAVAILABLE = 3
EXIT_NO_BANS = 4
EXIT_APPLY_FAILED = 5

STATUS_SUCCESS = "success"
STATUS_EMPTY = "success-empty"
STATUS_FAILED = "failed"

# Output artifacts, one set per jail run
BANNED_IPS = "banned_ips.txt"
CYMRU_RAW = "cymru_raw.txt"
IPS_ENRICHED = "ips_enriched.csv"
LIST_IPS = "list_ips.txt"
LIST_PREFIXES = "list_prefixes.txt"
LIST_ASN_PREFIXES = "list_asn_prefixes.txt"
ASN_QUALIFYING = "asn_qualifying.txt"
ASN_SUMMARY = "asn_summary.csv"
RECOMMENDATIONS = "recommendations.txt"
APPLY_CMDS = "apply_cmds.sh"


def setup_logging(debug: bool = False):
    """Configures logging level."""
    log_level = logging.DEBUG if debug else logging.INFO
    # Force reconfiguration even if basicConfig was already called
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s - %(levelname)s - %(message)s",
        force=True,
    )


@dataclass
class RunOutcome:
    """Result of one jail run, as reported to the CLI and the fleet sweep."""

    jail: str
    status: str
    outdir: str = ""
    banned_count: int = 0
    enriched_count: int = 0
    qualifying_count: int = 0
    planned_members: int = 0
    applied_operations: int = 0
    error: Optional[str] = None
    failure_code: Optional[int] = None
    artifacts: Dict[str, str] = field(default_factory=dict)

    @property
    def exit_code(self) -> int:
        if self.status == STATUS_EMPTY:
            return EXIT_NO_BANS
        if self.status == STATUS_FAILED:
            return self.failure_code or EXIT_RESOLUTION_UNAVAILABLE
        return EXIT_SUCCESS


def exit_code_for(error: BaseException) -> int:
    """Maps the error that ended a jail run to the CLI exit code."""
    if isinstance(error, (ConfigurationError, StorageError, OSError)):
        return EXIT_CONFIG_ERROR
    if isinstance(error, DependencyMissing):
        return EXIT_DEPENDENCY_MISSING
    if isinstance(error, subprocess.CalledProcessError):
        return EXIT_APPLY_FAILED
    return EXIT_RESOLUTION_UNAVAILABLE


class JailEscalator:
    """
    Runs the escalation pipeline for a single jail.

    Collaborators default to the real implementations and can be injected
    (tests, fleet sweeps sharing one ban source).
    """

    def __init__(
        self,
        config: EscalationConfig,
        ban_source: Optional[BanSource] = None,
        resolver: Optional[BulkResolver] = None,
        store: Optional[ArtifactStore] = None,
        applier: Optional[FirewallPlanApplier] = None,
        slack_client: Optional[SlackClient] = None,
    ):
        self.config = config.validate()
        self.policy = EscalationPolicy.from_config(config)
        # Collaborators that can raise DependencyMissing come before the store,
        # which creates the output directory.
        self.ban_source = ban_source or self._default_ban_source()
        self.resolver = resolver or create_resolver(
            config.resolver,
            timeout=config.whois_timeout,
            delay=config.whois_delay,
            ipinfo_token=config.ipinfo_token,
        )
        self.applier = applier or self._default_applier()
        if config.apply:
            self.applier.preflight()
        self.store = store or create_artifact_store(
            config.outdir,
            jail=config.jail,
            s3_bucket=config.s3_bucket,
            s3_prefix=config.s3_prefix,
            region=config.region,
        )
        if slack_client is None and config.slack_enabled:
            slack_client = SlackClient(
                token=config.slack_token,
                webhook_url=config.slack_webhook_url,
                channel=config.slack_channel,
            )
        self.slack_client = slack_client
        self.outcome = RunOutcome(jail=config.jail, status=STATUS_SUCCESS)

    def _default_ban_source(self) -> BanSource:
        if self.config.ips_file:
            return FileBanSource(self.config.ips_file)
        return Fail2banBanSource()

    def _default_applier(self) -> FirewallPlanApplier:
        if self.config.apply_script:
            return ScriptFirewallApplier(os.path.join(os.path.abspath(self.config.outdir), APPLY_CMDS))
        return IpsetFirewallApplier()

    def _write(self, name: str, content: str, executable: bool = False):
        self.outcome.artifacts[name] = self.store.write(name, content, executable=executable)

    def _write_report(self, banned_count: int, **kwargs):
        self._write(
            RECOMMENDATIONS,
            render_recommendations(
                self.config.jail,
                self.policy,
                self.config.ttl_seconds,
                banned_count,
                self.store.location,
                **kwargs,
            ),
        )

    def run(self) -> RunOutcome:
        """Executes the pipeline and returns the run outcome."""
        jail = self.config.jail
        self.outcome.outdir = self.store.location
        logging.info(
            f"--- Escalating Fail2ban bans: jail={jail} mode={self.config.mode} ---"
        )
        if not self.config.apply:
            logging.warning("*** RUNNING IN DRY RUN MODE. NO CHANGES WILL BE MADE. ***")

        logging.info("Step 1/6: Reading banned addresses...")
        banned = self.ban_source.banned_addresses(jail)
        ordered = sorted_addresses(banned)
        self.outcome.banned_count = len(ordered)
        self._write(BANNED_IPS, render_lines(ordered))

        if not ordered:
            return self._finish_empty()

        logging.info(f"Step 2/6: Resolving {len(ordered)} address(es) via {self.config.resolver}...")
        try:
            raw_lines = self.resolver.resolve(ordered)
        except ResolutionUnavailable as e:
            logging.error(f"Enrichment unavailable for jail '{jail}': {e}")
            self.outcome.status = STATUS_FAILED
            self.outcome.error = str(e)
            self.outcome.failure_code = exit_code_for(e)
            self._write_report(len(ordered), failure=str(e))
            self._notify()
            raise
        self._write(CYMRU_RAW, render_lines(raw_lines))

        logging.info("Step 3/6: Parsing and validating WHOIS records...")
        table = build_enrichment_table(raw_lines, banned)
        self.outcome.enriched_count = len(table.records)
        csv_buffer = io.StringIO()
        write_enriched_csv(table.records, csv_buffer)
        self._write(IPS_ENRICHED, csv_buffer.getvalue())
        self._write(LIST_IPS, render_lines(sorted_addresses(table.enriched_addresses)))

        logging.info("Step 4/6: Aggregating by prefix and ASN, applying policy...")
        aggregation = aggregate(table.records)
        outcome = self._evaluate_all(banned, aggregation)

        logging.info("Step 5/6: Building action plan...")
        plan = build_action_plan(outcome, jail, self.config.ttl_seconds)
        self.outcome.qualifying_count = len(outcome.qualifying)
        self.outcome.planned_members = len(plan.add_members)
        self._write(APPLY_CMDS, render_script(plan), executable=True)
        self._write_report(
            len(ordered), table=table, aggregation=aggregation, outcome=outcome, plan=plan
        )
        logging.info(
            f"{self.config.mode} mode: {len(outcome.qualifying)} qualifying target(s), "
            f"{len(plan.add_members)} set member(s) planned"
        )

        logging.info("Step 6/6: Enforcing plan...")
        self._enforce(plan)
        self._notify(table)
        return self.outcome

    def _evaluate_all(self, banned, aggregation: Aggregation) -> PolicyOutcome:
        """Writes the prefix and ASN lists regardless of mode; returns the selected outcome."""
        outcomes = {
            mode: evaluate(self.policy, banned, aggregation, mode=mode)
            for mode in ("ip", "prefix", "asn")
        }
        self._write(LIST_PREFIXES, render_lines(outcomes["prefix"].block_targets))
        self._write(LIST_ASN_PREFIXES, render_lines(outcomes["asn"].block_targets))
        self._write(ASN_QUALIFYING, render_asn_qualifying(outcomes["asn"], aggregation))
        self._write(ASN_SUMMARY, render_asn_summary(aggregation))
        logging.info(
            f"Prefixes qualifying: {len(outcomes['prefix'].qualifying)} of "
            f"{len(aggregation.prefix_groups)}; ASNs qualifying: "
            f"{len(outcomes['asn'].qualifying)} of {len(aggregation.asn_groups)}"
        )
        return outcomes[self.config.mode]

    def _enforce(self, plan: ActionPlan):
        script = self.outcome.artifacts.get(APPLY_CMDS, APPLY_CMDS)
        if not self.config.apply:
            logging.info(
                f"[DRY RUN] Would apply {len(plan.operations)} operation(s). "
                f"Review with: cat {script}"
            )
            return
        self.outcome.applied_operations = self.applier.apply(plan)

    def _finish_empty(self) -> RunOutcome:
        jail = self.config.jail
        logging.info(f"0 banned IPs in jail '{jail}'. Nothing to do.")
        self.outcome.status = STATUS_EMPTY
        empty = build_action_plan(PolicyOutcome(mode=self.config.mode), jail, self.config.ttl_seconds)
        for name in (CYMRU_RAW, LIST_IPS, LIST_PREFIXES, LIST_ASN_PREFIXES, ASN_QUALIFYING):
            self._write(name, "")
        csv_buffer = io.StringIO()
        write_enriched_csv([], csv_buffer)
        self._write(IPS_ENRICHED, csv_buffer.getvalue())
        self._write(ASN_SUMMARY, render_asn_summary(Aggregation()))
        self._write(APPLY_CMDS, render_script(empty), executable=True)
        self._write_report(0)
        return self.outcome

    def _notify(self, table: Optional[EnrichmentTable] = None):
        if not self.slack_client:
            return
        block = SlackBlock()
        block.append(summary_line(self.outcome, self.config))
        if table is not None and table.unresolved:
            block.append(f"Unresolved: {len(table.unresolved)} address(es)")
        if self.outcome.error:
            block.append(f"Error: {self.outcome.error}")
        if not self.slack_client.notify(message=block.text(), blocks=block.get()["blocks"]):
            logging.warning("Slack notification was not delivered")
            return
        report = self.outcome.artifacts.get(RECOMMENDATIONS)
        if report and self.slack_client.client:
            self.slack_client.upload_file(report, title=f"{self.outcome.jail} recommendations")


def summary_line(outcome: RunOutcome, config: EscalationConfig) -> str:
    prefix = "" if config.apply else "[DRY RUN] "
    return (
        f"{prefix}f2b-escalate jail={outcome.jail} mode={config.mode} "
        f"status={outcome.status} banned={outcome.banned_count} "
        f"enriched={outcome.enriched_count} qualifying={outcome.qualifying_count} "
        f"planned={outcome.planned_members}"
    )


def build_parser() -> argparse.ArgumentParser:
    parser = ConfigArgumentParser(
        prog="f2b-escalate",
        description="Enrich Fail2ban bans with Team Cymru ASN/prefix data and emit "
        "an ipset/iptables plan at ip, prefix or asn granularity.",
        formatter_class=argparse.RawTextHelpFormatter,
        epilog="""
Example dry run (prefix mode, review apply_cmds.sh afterwards):
  sudo f2b-escalate --jail sshd --mode prefix --min-prefix-count 5

Example live run (block whole ASNs for 12 hours):
  sudo f2b-escalate --jail sshd --mode asn --timeout 43200 --apply

Example live run through the written script:
  sudo f2b-escalate --jail sshd --mode prefix --apply --apply-script

Exit codes: 0 success, 1 configuration error, 2 missing dependency,
3 WHOIS lookup unavailable, 4 no banned IPs,
5 firewall command failed during --apply.
""",
    )
    parser.add_argument("--jail", required=True, help="Fail2ban jail name (e.g. sshd).")
    parser.add_argument(
        "--outdir",
        default=DEFAULT_OUTDIR,
        help="Directory for the run artifacts (default: ./f2b_cymru_out).",
    )
    parser.add_argument(
        "--ips-file",
        default=None,
        help="Read banned IPs from a file instead of fail2ban-client.",
    )
    add_common_arguments(parser)
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    try:
        args = build_parser().parse_args(argv)
        setup_logging(args.debug)
        config = EscalationConfig.from_args(args).validate()
        outcome = JailEscalator(config).run()
    except ConfigurationError as e:
        logging.error(f"Configuration error: {e}")
        return EXIT_CONFIG_ERROR
    except DependencyMissing as e:
        logging.error(str(e))
        return EXIT_DEPENDENCY_MISSING
    except ResolutionUnavailable as e:
        logging.error(f"WHOIS lookup unavailable: {e}")
        return EXIT_RESOLUTION_UNAVAILABLE
    except StorageError as e:
        logging.error(str(e))
        return EXIT_CONFIG_ERROR
    except subprocess.CalledProcessError as e:
        logging.error(f"Firewall command failed: {e}")
        return EXIT_APPLY_FAILED

    print(f"Outputs in: {outcome.outdir}")
    print(summary_line(outcome, config))
    return outcome.exit_code


if __name__ == "__main__":
    sys.exit(main())
