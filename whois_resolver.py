"""
WHOIS lookup backends that turn a set of banned addresses into raw records.

Every backend returns text lines in the Team Cymru verbose column order:

    AS | IP | BGP Prefix | CC | Registry | Allocated | AS Name

The Cymru backends produce the pipe-delimited form; the IPInfo backend renders
the same columns comma-delimited. Parsing and validation happen later, in
enrichment.py; a resolver only guarantees that a transport failure raises
ResolutionUnavailable instead of returning an empty result.

Backends:
    - CymruBulkResolver: one TCP round trip for the whole set (preferred)
    - CymruWhoisCliResolver: one `whois` call per address, strictly serialized
    - IpinfoBulkResolver: IPInfo batch API, needs a token with ASN data
"""

import logging
import shutil
import socket
import subprocess
import time
from abc import ABC, abstractmethod
from typing import Callable, Dict, Iterable, List, Optional

import ipinfo
import requests
from ipinfo.exceptions import RequestQuotaExceededError, TimeoutExceededError

from ban_source import sorted_addresses
from errors import ConfigurationError, DependencyMissing, ResolutionUnavailable

logger = logging.getLogger(__name__)

CYMRU_HOST = "whois.cymru.com"
CYMRU_PORT = 43
WHOIS_BIN = "whois"


def build_bulk_query(addresses: Iterable[str]) -> str:
    """Netcat-style bulk request understood by whois.cymru.com."""
    return "begin\nverbose\n" + "".join(f"{a}\n" for a in addresses) + "end\n"


class BulkResolver(ABC):
    """Resolves a set of addresses to raw WHOIS record lines."""

    name = "resolver"

    @abstractmethod
    def resolve(self, addresses: Iterable[str]) -> List[str]:
        """
        Looks up all addresses.

        Returns:
            List[str]: Raw response lines, in whatever order the service used.

        Raises:
            ResolutionUnavailable: If the service cannot be reached in time.
        """
        pass


class CymruBulkResolver(BulkResolver):
    """Bulk query over a single TCP connection to whois.cymru.com:43."""

    name = "cymru"

    def __init__(
        self,
        host: str = CYMRU_HOST,
        port: int = CYMRU_PORT,
        timeout: float = 30.0,
        connect: Callable = socket.create_connection,
    ):
        self.host = host
        self.port = port
        self.timeout = timeout
        self.connect = connect

    def resolve(self, addresses: Iterable[str]) -> List[str]:
        addresses = sorted_addresses(set(addresses))
        if not addresses:
            return []

        query = build_bulk_query(addresses)
        deadline = time.monotonic() + self.timeout
        logger.info(
            f"Querying {self.host}:{self.port} for {len(addresses)} address(es) "
            f"(timeout {self.timeout}s)"
        )
        chunks = []
        try:
            with self.connect((self.host, self.port), timeout=self.timeout) as sock:
                sock.sendall(query.encode("ascii"))
                while True:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        raise ResolutionUnavailable(
                            f"{self.host} did not finish answering within {self.timeout}s"
                        )
                    sock.settimeout(remaining)
                    data = sock.recv(8192)
                    if not data:
                        break
                    chunks.append(data)
        except OSError as e:
            raise ResolutionUnavailable(
                f"Bulk lookup against {self.host}:{self.port} failed: {e}"
            ) from e

        response = b"".join(chunks).decode("utf-8", errors="replace")
        lines = response.splitlines()
        logger.info(f"Received {len(lines)} line(s) from {self.host}")
        return lines


class CymruWhoisCliResolver(BulkResolver):
    """
    Per-address fallback through the `whois` binary.

    Queries run one at a time with a pause in between so that the shared
    Cymru service is never hit by a parallel fan-out.
    """

    name = "whois"

    def __init__(
        self,
        host: str = CYMRU_HOST,
        timeout: float = 30.0,
        delay: float = 0.2,
        whois_path: Optional[str] = None,
        runner: Callable = subprocess.run,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.whois_path = whois_path or shutil.which(WHOIS_BIN)
        if not self.whois_path:
            raise DependencyMissing(
                WHOIS_BIN, "install the whois package or use --resolver cymru"
            )
        self.host = host
        self.timeout = timeout
        self.delay = delay
        self.runner = runner
        self.sleep = sleep

    def resolve(self, addresses: Iterable[str]) -> List[str]:
        addresses = sorted_addresses(set(addresses))
        lines: List[str] = []
        for index, address in enumerate(addresses):
            if index and self.delay:
                self.sleep(self.delay)
            cmd = [self.whois_path, "-h", self.host, f" -v {address}"]
            try:
                result = self.runner(
                    cmd,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.PIPE,
                    text=True,
                    timeout=self.timeout,
                )
            except subprocess.TimeoutExpired as e:
                raise ResolutionUnavailable(
                    f"whois lookup for {address} timed out after {self.timeout}s"
                ) from e
            except OSError as e:
                raise ResolutionUnavailable(f"whois lookup for {address} failed: {e}") from e
            if result.returncode != 0:
                raise ResolutionUnavailable(
                    f"whois lookup for {address} exited {result.returncode}: "
                    f"{(result.stderr or '').strip()}"
                )
            lines.extend((result.stdout or "").splitlines())
            if (index + 1) % 25 == 0:
                logger.info(f"whois progress: {index + 1}/{len(addresses)} addresses")
        return lines


class IpinfoBulkResolver(BulkResolver):
    """
    IPInfo batch lookup rendered into comma-delimited Cymru columns.

    Only tokens whose plan includes ASN details return a route; records
    without one fail CIDR validation downstream and are counted as dropped.
    """

    name = "ipinfo"

    def __init__(self, token: str, timeout: float = 30.0, handler=None):
        if not token:
            raise ConfigurationError("--ipinfo-token", "an IPInfo token is required")
        self.timeout = timeout
        self.handler = handler or ipinfo.getHandler(
            token, request_options={"timeout": timeout}
        )

    def resolve(self, addresses: Iterable[str]) -> List[str]:
        addresses = sorted_addresses(set(addresses))
        if not addresses:
            return []
        logger.info(f"Querying IPInfo batch API for {len(addresses)} address(es)")
        try:
            details = self.handler.getBatchDetails(addresses, timeout_total=self.timeout)
        except (
            requests.exceptions.RequestException,
            RequestQuotaExceededError,
            TimeoutExceededError,
        ) as e:
            raise ResolutionUnavailable(f"IPInfo batch lookup failed: {e}") from e

        return [
            self._format_line(address, details[address])
            for address in addresses
            if isinstance(details.get(address), dict)
        ]

    @staticmethod
    def _format_line(address: str, detail: Dict) -> str:
        asn_info = detail.get("asn") if isinstance(detail.get("asn"), dict) else {}
        asn = str(asn_info.get("asn", ""))
        as_name = asn_info.get("name", "")
        route = asn_info.get("route", "")
        if not asn:
            # Free plans only expose "org", e.g. "AS15169 Google LLC"
            org = detail.get("org") or ""
            asn, _, as_name = org.partition(" ")
        if asn.upper().startswith("AS"):
            asn = asn[2:]
        fields = [
            asn,
            address,
            route,
            detail.get("country", ""),
            "ipinfo",
            "",
            as_name,
        ]
        return ",".join(str(f) for f in fields)


def create_resolver(
    resolver_type: str = "cymru",
    timeout: float = 30.0,
    delay: float = 0.2,
    ipinfo_token: Optional[str] = None,
) -> BulkResolver:
    """
    Factory for the configured lookup backend.

    Raises:
        ConfigurationError: Unknown backend or missing IPInfo token.
        DependencyMissing: `whois` backend selected but the binary is absent.
    """
    resolver_type = resolver_type.lower()

    if resolver_type == "cymru":
        return CymruBulkResolver(timeout=timeout)
    elif resolver_type == "whois":
        return CymruWhoisCliResolver(timeout=timeout, delay=delay)
    elif resolver_type == "ipinfo":
        return IpinfoBulkResolver(token=ipinfo_token, timeout=timeout)
    else:
        raise ConfigurationError(
            "--resolver",
            f"Unknown resolver: {resolver_type}. Use 'cymru', 'whois' or 'ipinfo'",
        )
