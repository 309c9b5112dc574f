#!/usr/bin/env python3
"""Test suite for config.py: validation and CLI/env parsing."""

import os
import sys
import unittest
from unittest.mock import patch

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from config import (
    ConfigArgumentParser,
    EscalationConfig,
    add_common_arguments,
    parse_country_codes,
)
from errors import ConfigurationError


def parse(argv):
    parser = ConfigArgumentParser()
    parser.add_argument("--jail", default="")
    parser.add_argument("--outdir", default=None)
    add_common_arguments(parser)
    return parser.parse_args(argv)


class TestParseCountryCodes(unittest.TestCase):
    def test_upper_cases_and_splits(self):
        self.assertEqual(parse_country_codes("se, no,,DK"), frozenset({"SE", "NO", "DK"}))

    def test_empty(self):
        self.assertEqual(parse_country_codes(""), frozenset())

    def test_invalid(self):
        with self.assertRaises(ConfigurationError) as ctx:
            parse_country_codes("SWE")
        self.assertEqual(ctx.exception.option, "--asn-exclude-cc")


class TestValidate(unittest.TestCase):
    def test_defaults_are_valid(self):
        config = EscalationConfig(jail="sshd").validate()
        self.assertEqual(config.mode, "ip")
        self.assertEqual(config.ttl_seconds, 86400)
        self.assertEqual(config.asn_min_prefixes, 3)
        self.assertEqual(config.asn_exclude_cc, frozenset({"SE"}))

    def test_jail_required(self):
        with self.assertRaises(ConfigurationError) as ctx:
            EscalationConfig().validate()
        self.assertEqual(ctx.exception.option, "--jail")

    def test_jail_optional_for_fleet(self):
        EscalationConfig().validate(require_jail=False)

    def test_invalid_mode(self):
        with self.assertRaises(ConfigurationError) as ctx:
            EscalationConfig(jail="sshd", mode="country").validate()
        self.assertEqual(ctx.exception.option, "--mode")

    def test_ttl_must_be_positive(self):
        for ttl in (0, -5):
            with self.assertRaises(ConfigurationError):
                EscalationConfig(jail="sshd", ttl_seconds=ttl).validate()

    def test_thresholds_must_be_positive(self):
        with self.assertRaises(ConfigurationError) as ctx:
            EscalationConfig(jail="sshd", asn_min_prefixes=0).validate()
        self.assertEqual(ctx.exception.option, "--asn-min-prefixes")

    def test_ipinfo_needs_token(self):
        with self.assertRaises(ConfigurationError):
            EscalationConfig(jail="sshd", resolver="ipinfo").validate()
        EscalationConfig(jail="sshd", resolver="ipinfo", ipinfo_token="tok").validate()

    def test_apply_script_requires_apply(self):
        with self.assertRaises(ConfigurationError) as ctx:
            EscalationConfig(jail="sshd", apply_script=True).validate()
        self.assertEqual(ctx.exception.option, "--apply-script")
        EscalationConfig(jail="sshd", apply=True, apply_script=True).validate()

    def test_for_jail(self):
        base = EscalationConfig(mode="asn")
        config = base.for_jail("sshd", "/run/sshd")
        self.assertEqual((config.jail, config.outdir, config.mode), ("sshd", "/run/sshd", "asn"))
        self.assertEqual(base.jail, "")


class TestFromArgs(unittest.TestCase):
    @patch.dict(os.environ, {}, clear=True)
    def test_cli_values(self):
        args = parse(
            ["--jail", "sshd", "--mode", "asn", "--timeout", "3600",
             "--asn-exclude-cc", "se,no", "--apply"]
        )
        config = EscalationConfig.from_args(args)
        self.assertEqual(config.mode, "asn")
        self.assertEqual(config.ttl_seconds, 3600)
        self.assertEqual(config.asn_exclude_cc, frozenset({"SE", "NO"}))
        self.assertTrue(config.apply)
        self.assertFalse(config.apply_script)
        self.assertEqual(config.outdir, "./f2b_cymru_out")
        self.assertFalse(config.slack_enabled)

    @patch.dict(
        os.environ,
        {"SLACK_BOT_TOKEN": "xoxb-env", "SLACK_CHANNEL": "#sec", "IPINFO_TOKEN": "env-tok"},
        clear=True,
    )
    def test_secrets_from_environment(self):
        config = EscalationConfig.from_args(parse(["--jail", "sshd"]))
        self.assertEqual(config.slack_token, "xoxb-env")
        self.assertEqual(config.ipinfo_token, "env-tok")
        self.assertTrue(config.slack_enabled)

    @patch.dict(os.environ, {"SLACK_BOT_TOKEN": "xoxb-env"}, clear=True)
    def test_argument_overrides_environment(self):
        config = EscalationConfig.from_args(parse(["--slack-token", "xoxb-cli"]))
        self.assertEqual(config.slack_token, "xoxb-cli")

    def test_usage_error_is_configuration_error(self):
        with self.assertRaises(ConfigurationError):
            parse(["--timeout", "soon"])

    def test_unknown_argument(self):
        with self.assertRaises(ConfigurationError):
            parse(["--bogus"])


if __name__ == "__main__":
    unittest.main()
