#!/usr/bin/env python3
"""
Runs the jail escalation for every Fail2ban jail on the host.

Each jail gets its own output directory under --run-dir. A failing jail is
recorded and the sweep carries on with the others; the exit code reports
the most fundamental failure across jails.
"""

import argparse
import logging
import os
import subprocess
import sys
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from typing import Callable, List, Optional

from artifact_store import StorageError
from ban_source import BanSource, Fail2banBanSource
from config import DEFAULT_RUN_DIR, ConfigArgumentParser, EscalationConfig, add_common_arguments
from errors import ConfigurationError, DependencyMissing, EscalationError
from f2b_escalate import (
    APPLY_CMDS,
    EXIT_CONFIG_ERROR,
    EXIT_DEPENDENCY_MISSING,
    EXIT_SUCCESS,
    STATUS_FAILED,
    JailEscalator,
    RunOutcome,
    exit_code_for,
    setup_logging,
)
from firewall import FirewallPlanApplier, IpsetFirewallApplier, ScriptFirewallApplier
from plan_emitter import ActionPlan, utc_timestamp
from slack_client import SlackBlock, SlackClient


class SerializedApplier(FirewallPlanApplier):
    """Lets parallel jail runs share one packet filter without interleaving plans."""

    def __init__(self, applier: FirewallPlanApplier, lock: Optional[threading.Lock] = None):
        self.applier = applier
        self.lock = lock or threading.Lock()

    def preflight(self):
        self.applier.preflight()

    def apply(self, plan: ActionPlan) -> int:
        with self.lock:
            return self.applier.apply(plan)


@dataclass
class SweepSummary:
    run_dir: str
    jails: List[str] = field(default_factory=list)
    outcomes: List[RunOutcome] = field(default_factory=list)

    @property
    def failures(self) -> List[RunOutcome]:
        return [o for o in self.outcomes if o.status == STATUS_FAILED]

    @property
    def exit_code(self) -> int:
        # lowest failure code wins
        codes = [o.exit_code for o in self.failures]
        return min(codes) if codes else EXIT_SUCCESS

    def lines(self, config: EscalationConfig, parallel: int) -> List[str]:
        lines = [
            f"Run dir: {self.run_dir}",
            f"Mode: {config.mode}, Timeout: {config.ttl_seconds}, "
            f"Apply: {int(config.apply)}, Parallel: {parallel}",
        ]
        if config.mode == "asn":
            lines.append(
                f"ASN thresholds: ips>={config.asn_min_ips}, "
                f"prefixes>={config.asn_min_prefixes}, "
                f"exclude-cc={','.join(sorted(config.asn_exclude_cc))}"
            )
        for outcome in self.outcomes:
            line = (
                f"  {outcome.jail}: {outcome.status} banned={outcome.banned_count} "
                f"planned={outcome.planned_members}"
            )
            if outcome.error:
                line += f" error={outcome.error}"
            lines.append(line)
        lines.append(f"Jails processed: {len(self.jails)}  Failures: {len(self.failures)}")
        return lines


class FleetSweep:
    """
    Discovers jails and runs a JailEscalator for each one.

    Args:
        config: Shared options; jail and outdir are filled in per jail.
        run_dir: Parent directory, each jail writes to <run_dir>/<jail>.
        parallel: Number of jails processed concurrently.
        ban_source: Source used for both jail discovery and ban lists.
        escalator_factory: Builds the per-jail runner (injected in tests).
    """

    def __init__(
        self,
        config: EscalationConfig,
        run_dir: str = DEFAULT_RUN_DIR,
        parallel: int = 1,
        ban_source: Optional[BanSource] = None,
        escalator_factory: Optional[Callable[..., JailEscalator]] = None,
        applier: Optional[FirewallPlanApplier] = None,
        slack_client: Optional[SlackClient] = None,
    ):
        if parallel < 1:
            raise ConfigurationError("--parallel", f"must be at least 1 (got {parallel})")
        if not run_dir:
            raise ConfigurationError("--run-dir", "must not be empty")
        self.config = config.validate(require_jail=False)
        self.run_dir = os.path.abspath(run_dir)
        self.parallel = parallel
        self.ban_source = ban_source or Fail2banBanSource()
        self.escalator_factory = escalator_factory or JailEscalator
        self.applier = SerializedApplier(applier or IpsetFirewallApplier())
        if slack_client is None and config.slack_enabled:
            slack_client = SlackClient(
                token=config.slack_token,
                webhook_url=config.slack_webhook_url,
                channel=config.slack_channel,
            )
        self.slack_client = slack_client

    def discover_jails(self) -> List[str]:
        jails = self.ban_source.list_jails()
        if not jails:
            raise DependencyMissing(
                "fail2ban jail list",
                "could not parse 'fail2ban-client status'; run as root and ensure Fail2ban is active",
            )
        return jails

    def jail_applier(self, outdir: str) -> FirewallPlanApplier:
        """Per-jail applier; all of them share the sweep-wide lock."""
        if self.config.apply_script:
            script = ScriptFirewallApplier(os.path.join(outdir, APPLY_CMDS))
            return SerializedApplier(script, lock=self.applier.lock)
        return self.applier

    def run_jail(self, jail: str) -> RunOutcome:
        outdir = os.path.join(self.run_dir, jail)
        logging.info(f"Processing jail: {jail} (outdir={outdir})")
        try:
            # one fleet-level Slack summary instead of one message per jail
            jail_config = replace(
                self.config.for_jail(jail, outdir), slack_token=None, slack_webhook_url=None
            )
            escalator = self.escalator_factory(
                jail_config,
                ban_source=self.ban_source,
                applier=self.jail_applier(outdir),
                slack_client=None,
            )
            outcome = escalator.run()
        except (EscalationError, StorageError, OSError, subprocess.CalledProcessError) as e:
            logging.error(f"Jail '{jail}' run failed: {e}")
            return RunOutcome(
                jail=jail,
                status=STATUS_FAILED,
                outdir=outdir,
                error=str(e),
                failure_code=exit_code_for(e),
            )
        logging.info(f"Jail '{jail}': {outcome.status}, recommendations in {outcome.outdir}")
        return outcome

    def run(self) -> SweepSummary:
        logging.info(f"Eradication run starting @ {utc_timestamp()}")
        if not self.config.apply:
            logging.warning("*** RUNNING IN DRY RUN MODE. NO CHANGES WILL BE MADE. ***")
        summary = SweepSummary(run_dir=self.run_dir)
        summary.jails = self.discover_jails()
        logging.info(f"Found {len(summary.jails)} jails: {' '.join(summary.jails)}")

        if self.parallel > 1:
            with ThreadPoolExecutor(max_workers=self.parallel) as executor:
                # map() keeps results in jail order
                summary.outcomes = list(executor.map(self.run_jail, summary.jails))
        else:
            summary.outcomes = [self.run_jail(jail) for jail in summary.jails]

        for line in summary.lines(self.config, self.parallel):
            logging.info(line)
        self._notify(summary)
        return summary

    def _notify(self, summary: SweepSummary):
        if not self.slack_client:
            return
        block = SlackBlock()
        prefix = "" if self.config.apply else "[DRY RUN] "
        block.append(
            f"{prefix}*f2b-eradicate*: {len(summary.jails)} jail(s), "
            f"{len(summary.failures)} failure(s)"
        )
        block.add_divider()
        block.append("\n".join(summary.lines(self.config, self.parallel)))
        if not self.slack_client.notify(message=block.text(), blocks=block.get()["blocks"]):
            logging.warning("Slack notification was not delivered")


def build_parser() -> argparse.ArgumentParser:
    parser = ConfigArgumentParser(
        prog="f2b-eradicate",
        description="Run f2b-escalate across all Fail2ban jails.",
        formatter_class=argparse.RawTextHelpFormatter,
        epilog="""
Examples:
  f2b-eradicate --mode prefix
  sudo f2b-eradicate --mode asn --apply --asn-min-ips 10 --asn-min-prefixes 3 --asn-exclude-cc SE
""",
    )
    parser.add_argument(
        "--run-dir",
        default=DEFAULT_RUN_DIR,
        help="Parent directory for per-jail outputs (default: ./f2b_eradic_run).",
    )
    parser.add_argument(
        "--parallel",
        type=int,
        default=1,
        help="Number of jails processed concurrently (default: 1).",
    )
    add_common_arguments(parser)
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    try:
        args = build_parser().parse_args(argv)
        setup_logging(args.debug)
        config = EscalationConfig.from_args(args)
        sweep = FleetSweep(config, run_dir=args.run_dir, parallel=args.parallel)
        summary = sweep.run()
    except ConfigurationError as e:
        logging.error(f"Configuration error: {e}")
        return EXIT_CONFIG_ERROR
    except DependencyMissing as e:
        logging.error(str(e))
        return EXIT_DEPENDENCY_MISSING

    print("Summary:")
    for line in summary.lines(sweep.config, sweep.parallel):
        print(f"  {line}")
    return summary.exit_code


if __name__ == "__main__":
    sys.exit(main())
