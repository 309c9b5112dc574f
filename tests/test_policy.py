#!/usr/bin/env python3
"""
Test suite for policy.py

Threshold boundaries, the country-code veto and ip-mode pass-through.
"""

import os
import sys
import unittest

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from aggregation import Aggregation, AsnGroup, PrefixGroup, aggregate
from config import EscalationConfig
from enrichment import EnrichmentRecord
from policy import (
    KIND_ADDRESS,
    EscalationPolicy,
    evaluate,
    qualify_asn,
    qualify_prefix,
    sorted_networks,
)


def asn_group(ips, prefixes, countries=("US",), asn=64500):
    return AsnGroup(
        asn=asn,
        as_name="EXAMPLE",
        member_count=ips,
        prefixes=tuple(f"10.{i}.0.0/24" for i in range(prefixes)),
        country_codes=frozenset(countries),
    )


class TestPolicyFromConfig(unittest.TestCase):
    def test_copies_thresholds(self):
        config = EscalationConfig(
            jail="sshd", mode="asn", asn_min_ips=4, asn_exclude_cc=frozenset({"se", "NO"})
        )
        policy = EscalationPolicy.from_config(config)
        self.assertEqual(policy.mode, "asn")
        self.assertEqual(policy.asn_min_ips, 4)
        self.assertEqual(policy.asn_exclude_cc, frozenset({"SE", "NO"}))


class TestQualifyPrefix(unittest.TestCase):
    def test_boundary(self):
        group = PrefixGroup("154.73.249.0/24", 37153, "HOSTAFRICA", 5)
        self.assertTrue(qualify_prefix(group, 5).qualifies)
        self.assertFalse(qualify_prefix(group, 6).qualifies)
        self.assertEqual(qualify_prefix(group, 6).reason, "ips=5 < 6")

    def test_block_target_is_prefix(self):
        group = PrefixGroup("154.73.249.0/24", 37153, "HOSTAFRICA", 7)
        self.assertEqual(qualify_prefix(group, 5).block_targets, ("154.73.249.0/24",))


class TestQualifyAsn(unittest.TestCase):
    def setUp(self):
        self.policy = EscalationPolicy(
            mode="asn", asn_min_ips=10, asn_min_prefixes=3, asn_exclude_cc=frozenset({"SE"})
        )

    def test_qualifies_at_thresholds(self):
        decision = qualify_asn(asn_group(10, 3), self.policy)
        self.assertTrue(decision.qualifies)
        self.assertEqual(decision.target, "AS64500")
        self.assertEqual(len(decision.block_targets), 3)

    def test_below_ip_threshold(self):
        self.assertFalse(qualify_asn(asn_group(9, 3), self.policy).qualifies)

    def test_below_prefix_threshold(self):
        decision = qualify_asn(asn_group(50, 2), self.policy)
        self.assertFalse(decision.qualifies)
        self.assertIn("prefixes=2 < 3", decision.reason)

    def test_only_excluded_country_vetoes(self):
        decision = qualify_asn(asn_group(500, 40, countries=("SE",)), self.policy)
        self.assertFalse(decision.qualifies)

    def test_single_excluded_sample_vetoes(self):
        decision = qualify_asn(asn_group(500, 40, countries=("US", "DE", "SE")), self.policy)
        self.assertFalse(decision.qualifies)
        self.assertIn("excluded country SE", decision.reason)

    def test_empty_exclusion_set(self):
        policy = EscalationPolicy(
            mode="asn", asn_min_ips=10, asn_min_prefixes=3, asn_exclude_cc=frozenset()
        )
        self.assertTrue(qualify_asn(asn_group(10, 3, countries=("SE",)), policy).qualifies)


class TestEvaluate(unittest.TestCase):
    def setUp(self):
        records = [
            EnrichmentRecord(f"154.73.249.{i}", 37153, "HOSTAFRICA", "154.73.249.0/24", "ZA", "")
            for i in range(1, 8)
        ] + [
            EnrichmentRecord("8.8.8.8", 15169, "GOOGLE", "8.8.8.0/24", "US", ""),
        ]
        self.aggregation = aggregate(records)
        self.banned = {r.address for r in records} | {"192.168.1.1"}

    def test_ip_mode_qualifies_every_banned_address(self):
        outcome = evaluate(EscalationPolicy(mode="ip"), self.banned, self.aggregation)
        self.assertEqual(len(outcome.qualifying), len(self.banned))
        self.assertTrue(all(d.kind == KIND_ADDRESS for d in outcome.decisions))
        # unresolved addresses are still blocked in ip mode
        self.assertIn("192.168.1.1", outcome.block_targets)

    def test_prefix_mode(self):
        outcome = evaluate(
            EscalationPolicy(mode="prefix", min_prefix_count=5), self.banned, self.aggregation
        )
        self.assertEqual(outcome.block_targets, ["154.73.249.0/24"])
        self.assertEqual(len(outcome.decisions), 2)

    def test_mode_override(self):
        outcome = evaluate(EscalationPolicy(mode="ip"), self.banned, self.aggregation, mode="asn")
        self.assertEqual(outcome.mode, "asn")
        self.assertEqual(outcome.qualifying, [])

    def test_empty_aggregation(self):
        outcome = evaluate(EscalationPolicy(mode="prefix"), set(), Aggregation())
        self.assertEqual(outcome.decisions, [])
        self.assertEqual(outcome.block_targets, [])

    def test_unknown_mode(self):
        with self.assertRaises(ValueError):
            evaluate(EscalationPolicy(mode="country"), set(), Aggregation())

    def test_asn_targets_are_every_prefix_of_qualifying_asn(self):
        records = [
            EnrichmentRecord(f"10.{i}.0.{j}", 64500, "BULLET", f"10.{i}.0.0/24", "RU", "")
            for i in range(3)
            for j in range(1, 5)
        ]
        aggregation = aggregate(records)
        outcome = evaluate(
            EscalationPolicy(mode="asn", asn_min_ips=10, asn_min_prefixes=3),
            {r.address for r in records},
            aggregation,
        )
        self.assertEqual(outcome.block_targets, ["10.0.0.0/24", "10.1.0.0/24", "10.2.0.0/24"])


class TestSortedNetworks(unittest.TestCase):
    def test_numeric_order(self):
        self.assertEqual(
            sorted_networks(["10.0.0.0/8", "9.0.0.0/8", "2001:db8::/32", "9.0.0.0/8"]),
            ["9.0.0.0/8", "10.0.0.0/8", "2001:db8::/32"],
        )


if __name__ == "__main__":
    unittest.main()
