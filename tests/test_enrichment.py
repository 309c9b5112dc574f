#!/usr/bin/env python3
"""
Test suite for enrichment.py

Covers layout detection, field cleaning, validation drop counts and the
ips_enriched.csv rendering.
"""

import io
import os
import sys
import unittest

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from enrichment import (
    CSV_HEADER,
    DROP_ADDRESS,
    DROP_ASN,
    DROP_DUPLICATE,
    DROP_MALFORMED,
    DROP_NOT_BANNED,
    DROP_OUTSIDE_PREFIX,
    DROP_PREFIX,
    EnrichmentRecord,
    RecordLayout,
    build_enrichment_table,
    clean_field,
    detect_layout,
    write_enriched_csv,
)

BANNER = "Bulk mode; whois.cymru.com [2025-01-01 00:00:00 +0000]"
HEADER = "AS      | IP               | BGP Prefix          | CC | Registry | Allocated  | AS Name"


def pipe_row(asn, ip, prefix, cc="ZA", name="HOSTAFRICA, ZA", allocated="2016-05-10"):
    return f"{asn}   | {ip}    | {prefix}     | {cc} | afrinic  | {allocated} | {name}"


class TestLayout(unittest.TestCase):
    def test_pipe_detected_after_banner_and_header(self):
        lines = [BANNER, HEADER, pipe_row(37153, "154.73.249.10", "154.73.249.0/24")]
        self.assertEqual(detect_layout(lines), RecordLayout.PIPE)

    def test_comma_detected(self):
        lines = ["15169,8.8.8.8,8.8.8.0/24,US,ipinfo,,Google LLC"]
        self.assertEqual(detect_layout(lines), RecordLayout.COMMA)

    def test_pipe_preferred_over_comma_in_name(self):
        self.assertEqual(
            detect_layout([pipe_row(1, "1.2.3.4", "1.2.3.0/24", name="A, B, C")]),
            RecordLayout.PIPE,
        )

    def test_no_layout(self):
        self.assertIsNone(detect_layout([BANNER, "", "   "]))

    def test_split_keeps_pipes_in_last_column(self):
        parts = RecordLayout.PIPE.split("1 | 1.2.3.4 | 1.2.3.0/24 | US | arin | 2001 | A|B")
        self.assertEqual(parts[-1], "A|B")

    def test_split_short_row(self):
        self.assertIsNone(RecordLayout.PIPE.split("1 | 1.2.3.4 | 1.2.3.0/24"))

    def test_clean_field(self):
        self.assertEqual(clean_field("  HOST\t AFRICA  "), "HOST AFRICA")


class TestBuildEnrichmentTable(unittest.TestCase):
    def test_valid_rows(self):
        banned = {"154.73.249.10", "154.73.249.11"}
        lines = [
            BANNER,
            HEADER,
            pipe_row(37153, "154.73.249.10", "154.73.249.0/24"),
            pipe_row(37153, "154.73.249.11", "154.73.249.0/24", cc="za"),
        ]

        table = build_enrichment_table(lines, banned)

        self.assertEqual(len(table.records), 2)
        self.assertEqual(table.dropped_rows, 0)
        self.assertEqual(
            table.records[0],
            EnrichmentRecord(
                address="154.73.249.10",
                asn=37153,
                as_name="HOSTAFRICA ZA",
                bgp_prefix="154.73.249.0/24",
                country_code="ZA",
                allocation_date="2016-05-10",
            ),
        )
        self.assertEqual(table.records[1].country_code, "ZA")
        self.assertEqual(table.unresolved, [])

    def test_malformed_rows_are_counted_not_raised(self):
        banned = {"1.2.3.4", "5.6.7.8", "9.9.9.9", "10.0.0.1"}
        lines = [
            HEADER,
            pipe_row("NA", "1.2.3.4", "1.2.3.0/24"),
            pipe_row(100, "5.6.7.999", "5.6.7.0/24"),
            pipe_row(100, "9.9.9.9", "9.9.9.0"),
            pipe_row(100, "10.0.0.1", "10.0.0.0/33"),
            "100 | 10.0.0.1 | 10.0.0.0/8",
        ]

        table = build_enrichment_table(lines, banned)

        self.assertEqual(table.records, [])
        self.assertEqual(table.drop_reasons[DROP_ASN], 1)
        self.assertEqual(table.drop_reasons[DROP_ADDRESS], 1)
        self.assertEqual(table.drop_reasons[DROP_PREFIX], 2)
        self.assertEqual(table.drop_reasons[DROP_MALFORMED], 1)
        self.assertEqual(table.dropped_rows, 5)
        self.assertEqual(table.unresolved, ["1.2.3.4", "5.6.7.8", "9.9.9.9", "10.0.0.1"])

    def test_address_outside_prefix(self):
        table = build_enrichment_table(
            [pipe_row(100, "1.2.3.4", "5.6.7.0/24")], {"1.2.3.4"}
        )
        self.assertEqual(table.drop_reasons[DROP_OUTSIDE_PREFIX], 1)

    def test_non_canonical_prefix_normalized(self):
        table = build_enrichment_table(
            [pipe_row(100, "1.2.3.4", "1.2.3.77/24")], {"1.2.3.4"}
        )
        self.assertEqual(table.records[0].bgp_prefix, "1.2.3.0/24")

    def test_duplicates_and_unbanned(self):
        lines = [
            pipe_row(100, "1.2.3.4", "1.2.3.0/24", name="FIRST"),
            pipe_row(200, "1.2.3.4", "1.2.0.0/16", name="SECOND"),
            pipe_row(300, "8.8.8.8", "8.8.8.0/24"),
        ]

        table = build_enrichment_table(lines, {"1.2.3.4"})

        self.assertEqual(len(table.records), 1)
        self.assertEqual(table.records[0].as_name, "FIRST")
        self.assertEqual(table.drop_reasons[DROP_DUPLICATE], 1)
        self.assertEqual(table.drop_reasons[DROP_NOT_BANNED], 1)

    def test_comma_layout(self):
        table = build_enrichment_table(
            ["15169,8.8.8.8,8.8.8.0/24,us,ipinfo,,Google LLC"], {"8.8.8.8"}
        )
        self.assertEqual(table.layout, RecordLayout.COMMA)
        self.assertEqual(table.records[0].asn, 15169)
        self.assertEqual(table.records[0].country_code, "US")

    def test_all_unresolved_summary(self):
        table = build_enrichment_table([BANNER], {"192.168.1.1"})
        self.assertEqual(table.records, [])
        self.assertEqual(table.summary(), "0 enriched of 1 banned")
        self.assertEqual(table.unresolved, ["192.168.1.1"])

    def test_enriched_is_subset_of_banned(self):
        lines = [
            pipe_row(100, "1.2.3.4", "1.2.3.0/24"),
            pipe_row(100, "1.2.3.5", "1.2.3.0/24"),
        ]
        banned = {"1.2.3.4"}
        table = build_enrichment_table(lines, banned)
        self.assertTrue(table.enriched_addresses <= banned)


class TestWriteEnrichedCsv(unittest.TestCase):
    def test_header_and_rows(self):
        record = EnrichmentRecord("1.2.3.4", 100, "EXAMPLE NET", "1.2.3.0/24", "US", "2001-01-01")
        buffer = io.StringIO()

        write_enriched_csv([record], buffer)

        self.assertEqual(
            buffer.getvalue(),
            ",".join(CSV_HEADER) + "\n1.2.3.4,100,EXAMPLE NET,1.2.3.0/24,US,2001-01-01\n",
        )


if __name__ == "__main__":
    unittest.main()
