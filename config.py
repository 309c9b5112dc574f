"""
Run configuration for f2b-escalate and f2b-eradicate.

All options are collected into an explicit EscalationConfig that is validated
before any network or firewall I/O happens. Secrets (Slack, IPInfo) may also
come from environment variables.
"""

import argparse
import os
from dataclasses import dataclass, field, replace
from typing import FrozenSet, Optional

from errors import ConfigurationError

MODES = ("ip", "prefix", "asn")
RESOLVERS = ("cymru", "whois", "ipinfo")

DEFAULT_MODE = "ip"
DEFAULT_TTL_SECONDS = 86400  # 24h
DEFAULT_MIN_PREFIX_COUNT = 5
DEFAULT_ASN_MIN_IPS = 10
DEFAULT_ASN_MIN_PREFIXES = 3
DEFAULT_ASN_EXCLUDE_CC = "SE"
DEFAULT_OUTDIR = "./f2b_cymru_out"
DEFAULT_RUN_DIR = "./f2b_eradic_run"
DEFAULT_WHOIS_TIMEOUT = 30.0
DEFAULT_WHOIS_DELAY = 0.2


def parse_country_codes(value: Optional[str]) -> FrozenSet[str]:
    """Parses a comma-separated list of country codes ("SE,NO") into a set."""
    if not value:
        return frozenset()
    codes = set()
    for token in value.split(","):
        token = token.strip().upper()
        if not token:
            continue
        if len(token) != 2 or not token.isalpha():
            raise ConfigurationError(
                "--asn-exclude-cc", f"invalid country code '{token}' (expected 2 letters)"
            )
        codes.add(token)
    return frozenset(codes)


@dataclass(frozen=True)
class EscalationConfig:
    """Options for a single jail run (and, minus the jail, for a fleet sweep)."""

    jail: str = ""
    mode: str = DEFAULT_MODE
    ttl_seconds: int = DEFAULT_TTL_SECONDS
    min_prefix_count: int = DEFAULT_MIN_PREFIX_COUNT
    asn_min_ips: int = DEFAULT_ASN_MIN_IPS
    asn_min_prefixes: int = DEFAULT_ASN_MIN_PREFIXES
    asn_exclude_cc: FrozenSet[str] = field(
        default_factory=lambda: frozenset({DEFAULT_ASN_EXCLUDE_CC})
    )
    outdir: str = DEFAULT_OUTDIR
    apply: bool = False
    apply_script: bool = False
    resolver: str = "cymru"
    whois_timeout: float = DEFAULT_WHOIS_TIMEOUT
    whois_delay: float = DEFAULT_WHOIS_DELAY
    ips_file: Optional[str] = None
    debug: bool = False
    slack_token: Optional[str] = None
    slack_channel: Optional[str] = None
    slack_webhook_url: Optional[str] = None
    ipinfo_token: Optional[str] = None
    s3_bucket: Optional[str] = None
    s3_prefix: str = "f2b-escalate"
    region: str = "us-east-1"

    def validate(self, require_jail: bool = True) -> "EscalationConfig":
        if require_jail and not self.jail:
            raise ConfigurationError("--jail", "a jail name is required")
        if self.mode not in MODES:
            raise ConfigurationError(
                "--mode", f"invalid mode '{self.mode}' (expected ip|prefix|asn)"
            )
        if self.resolver not in RESOLVERS:
            raise ConfigurationError(
                "--resolver",
                f"invalid resolver '{self.resolver}' (expected cymru|whois|ipinfo)",
            )
        if self.ttl_seconds < 1:
            raise ConfigurationError(
                "--timeout", "blocks must expire; use a positive number of seconds"
            )
        for option, value in (
            ("--min-prefix-count", self.min_prefix_count),
            ("--asn-min-ips", self.asn_min_ips),
            ("--asn-min-prefixes", self.asn_min_prefixes),
        ):
            if value < 1:
                raise ConfigurationError(option, f"must be at least 1 (got {value})")
        if self.whois_timeout <= 0:
            raise ConfigurationError("--whois-timeout", "must be greater than 0")
        if self.whois_delay < 0:
            raise ConfigurationError("--whois-delay", "must not be negative")
        if self.resolver == "ipinfo" and not self.ipinfo_token:
            raise ConfigurationError(
                "--ipinfo-token", "required when --resolver ipinfo (or set IPINFO_TOKEN)"
            )
        if self.apply_script and not self.apply:
            raise ConfigurationError("--apply-script", "only meaningful together with --apply")
        if not self.outdir:
            raise ConfigurationError("--outdir", "must not be empty")
        return self

    def for_jail(self, jail: str, outdir: str) -> "EscalationConfig":
        """Returns a copy bound to one jail and its own output directory."""
        return replace(self, jail=jail, outdir=outdir)

    @property
    def slack_enabled(self) -> bool:
        return bool((self.slack_token and self.slack_channel) or self.slack_webhook_url)

    @classmethod
    def from_args(cls, args: argparse.Namespace) -> "EscalationConfig":
        return cls(
            jail=getattr(args, "jail", "") or "",
            mode=args.mode,
            ttl_seconds=args.timeout,
            min_prefix_count=args.min_prefix_count,
            asn_min_ips=args.asn_min_ips,
            asn_min_prefixes=args.asn_min_prefixes,
            asn_exclude_cc=parse_country_codes(args.asn_exclude_cc),
            outdir=getattr(args, "outdir", DEFAULT_OUTDIR) or DEFAULT_OUTDIR,
            apply=args.apply,
            apply_script=args.apply_script,
            resolver=args.resolver,
            whois_timeout=args.whois_timeout,
            whois_delay=args.whois_delay,
            ips_file=getattr(args, "ips_file", None),
            debug=args.debug,
            slack_token=args.slack_token or os.getenv("SLACK_BOT_TOKEN"),
            slack_channel=args.slack_channel or os.getenv("SLACK_CHANNEL"),
            slack_webhook_url=os.getenv("SLACK_WEBHOOK_URL"),
            ipinfo_token=args.ipinfo_token or os.getenv("IPINFO_TOKEN"),
            s3_bucket=args.s3_bucket,
            s3_prefix=args.s3_prefix,
            region=args.region,
        )


class ConfigArgumentParser(argparse.ArgumentParser):
    """ArgumentParser that reports usage errors as ConfigurationError."""

    def error(self, message):
        raise ConfigurationError("arguments", message)


def add_common_arguments(parser: argparse.ArgumentParser):
    """Registers the options shared by the single-jail and fleet CLIs."""
    parser.add_argument(
        "--mode",
        default=DEFAULT_MODE,
        help="Blocking granularity: ip, prefix or asn (default: ip).",
    )
    parser.add_argument(
        "--timeout",
        type=int,
        default=DEFAULT_TTL_SECONDS,
        help="ipset entry timeout in seconds (default: 86400).",
    )
    parser.add_argument(
        "--apply",
        action="store_true",
        help="Execute the generated plan. Default is a dry run.",
    )
    parser.add_argument(
        "--apply-script",
        action="store_true",
        help="With --apply, run the written apply_cmds.sh with bash instead of "
        "executing plan operations one by one.",
    )
    parser.add_argument(
        "--min-prefix-count",
        type=int,
        default=DEFAULT_MIN_PREFIX_COUNT,
        help="Prefix mode: block a BGP prefix with at least this many banned IPs (default: 5).",
    )
    parser.add_argument(
        "--asn-min-ips",
        type=int,
        default=DEFAULT_ASN_MIN_IPS,
        help="ASN mode: minimum unique banned IPs per ASN (default: 10).",
    )
    parser.add_argument(
        "--asn-min-prefixes",
        type=int,
        default=DEFAULT_ASN_MIN_PREFIXES,
        help="ASN mode: minimum unique prefixes per ASN (default: 3).",
    )
    parser.add_argument(
        "--asn-exclude-cc",
        default=DEFAULT_ASN_EXCLUDE_CC,
        help="ASN mode: comma-separated country codes; an ASN is skipped if ANY "
        "sampled record matches (default: SE).",
    )
    parser.add_argument(
        "--resolver",
        default="cymru",
        help="Lookup backend: cymru (bulk), whois (per-address) or ipinfo (default: cymru).",
    )
    parser.add_argument(
        "--whois-timeout",
        type=float,
        default=DEFAULT_WHOIS_TIMEOUT,
        help="Ceiling in seconds for the WHOIS lookup (default: 30).",
    )
    parser.add_argument(
        "--whois-delay",
        type=float,
        default=DEFAULT_WHOIS_DELAY,
        help="Pause between per-address whois queries (default: 0.2).",
    )
    parser.add_argument(
        "--debug", action="store_true", help="Enable verbose debug logging."
    )
    parser.add_argument(
        "--slack-token",
        default=None,
        help="Slack bot token for run summaries (also can use SLACK_BOT_TOKEN env var).",
    )
    parser.add_argument(
        "--slack-channel",
        default=None,
        help="Slack channel for run summaries (also can use SLACK_CHANNEL env var).",
    )
    parser.add_argument(
        "--ipinfo-token",
        default=None,
        help="IPInfo API token for --resolver ipinfo (also can use IPINFO_TOKEN env var).",
    )
    parser.add_argument(
        "--s3-bucket",
        default=None,
        help="Mirror every output artifact to this S3 bucket.",
    )
    parser.add_argument(
        "--s3-prefix",
        default="f2b-escalate",
        help="Key prefix for mirrored artifacts (default: f2b-escalate).",
    )
    parser.add_argument(
        "--region",
        default="us-east-1",
        help="AWS region of the S3 mirror bucket (default: us-east-1).",
    )
