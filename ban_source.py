"""
Ban sources: where the set of currently banned addresses comes from.

Fail2banBanSource talks to the local fail2ban server through fail2ban-client.
FileBanSource reads a saved list, which is handy for reviewing a snapshot on a
machine without fail2ban.
"""

import ipaddress
import logging
import re
import shutil
import subprocess
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Callable, Iterable, List, Optional, Set

from errors import ConfigurationError, DependencyMissing, EscalationError

logger = logging.getLogger(__name__)

FAIL2BAN_CLIENT = "fail2ban-client"
# Placeholders fail2ban prints instead of an address list
EMPTY_MARKERS = {"no", "none", "<none>", "<no", "[]"}
# fail2ban-client messages meaning the server itself is unreachable
SERVER_DOWN_MARKERS = (
    "failed to access socket",
    "is fail2ban running",
    "unable to contact server",
    "connection refused",
)


def normalize_address(token: str) -> Optional[str]:
    """
    Returns the canonical text form of an IPv4/IPv6 host address, or None.

    IPv4 must be four dotted octets below 256; IPv6 is accepted as-is
    (best-effort pass-through).
    """
    token = token.strip().strip("<>[],'\"")
    if not token:
        return None
    try:
        return str(ipaddress.ip_address(token))
    except ValueError:
        return None


def extract_addresses(tokens: Iterable[str]) -> Set[str]:
    """Keeps the tokens that are valid addresses, normalized and deduplicated."""
    addresses = set()
    for token in tokens:
        address = normalize_address(token)
        if address:
            addresses.add(address)
        elif token.strip():
            logger.debug(f"Skipping non-address token: {token!r}")
    return addresses


def address_sort_key(address: str):
    ip = ipaddress.ip_address(address)
    return (ip.version, int(ip))


def sorted_addresses(addresses: Iterable[str]) -> List[str]:
    """Sorts addresses numerically, IPv4 before IPv6."""
    return sorted(addresses, key=address_sort_key)


class BanSource(ABC):
    """Provides the current ban list of a named jail."""

    @abstractmethod
    def banned_addresses(self, jail: str) -> Set[str]:
        """Returns the deduplicated banned addresses; an empty set means no bans."""
        pass


class Fail2banBanSource(BanSource):
    """
    Reads bans from fail2ban-client.

    The fast path is `fail2ban-client get <jail> banip`; when that yields
    nothing the human-readable `status <jail>` output is parsed from the
    "Banned IP list:" line onwards.

    An empty set always means fail2ban answered with no bans; a command that
    fails or times out raises instead.
    """

    def __init__(
        self,
        client_path: Optional[str] = None,
        runner: Callable = subprocess.run,
        timeout: float = 30,
    ):
        self.client_path = client_path or shutil.which(FAIL2BAN_CLIENT)
        if not self.client_path:
            raise DependencyMissing(
                FAIL2BAN_CLIENT,
                "install fail2ban or pass --ips-file with a saved ban list",
            )
        self.runner = runner
        self.timeout = timeout

    def _client(
        self, *args: str, jail: Optional[str] = None, fallback: bool = False
    ) -> Optional[str]:
        """
        Runs one fail2ban-client command and returns its stdout.

        Raises:
            ConfigurationError: fail2ban reports that the jail does not exist.
            DependencyMissing: The server did not answer, the socket is not
                reachable or the command failed for another reason.

        With fallback=True an unrecognised failure returns None so the caller
        can try another command.
        """
        cmd = [self.client_path, *args]
        logger.debug(f"Executing: {' '.join(cmd)}")
        try:
            result = self.runner(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired as e:
            raise DependencyMissing(
                FAIL2BAN_CLIENT, f"no answer from the fail2ban server within {self.timeout}s"
            ) from e
        if result.returncode == 0:
            return result.stdout or ""

        output = [(result.stderr or "").strip(), (result.stdout or "").strip()]
        message = " ".join(part for part in output if part)
        error = classify_client_failure(message, jail)
        if error is None:
            if fallback:
                logger.debug(f"{' '.join(cmd)} exited {result.returncode}: {message}")
                return None
            error = DependencyMissing(
                FAIL2BAN_CLIENT,
                f"'{' '.join(args)}' exited {result.returncode}: {message or 'no output'}",
            )
        raise error

    def banned_addresses(self, jail: str) -> Set[str]:
        banlist = self._client("get", jail, "banip", jail=jail, fallback=True)
        if banlist is not None:
            tokens = re.split(r"[\s,]+", banlist.replace("<", " ").replace(">", " "))
            tokens = [t for t in tokens if t.lower() not in EMPTY_MARKERS]
            addresses = extract_addresses(tokens)
            if addresses:
                logger.info(f"Read {len(addresses)} banned address(es) for jail '{jail}'")
                return addresses

        logger.debug(f"Fast path returned nothing for '{jail}', parsing status output")
        status = self._client("status", jail, jail=jail)
        addresses = extract_addresses(parse_banned_ip_list(status))
        logger.info(f"Read {len(addresses)} banned address(es) for jail '{jail}'")
        return addresses

    def list_jails(self) -> List[str]:
        """Returns the configured jail names, sorted and deduplicated."""
        return parse_jail_list(self._client("status"))


class FileBanSource(BanSource):
    """Reads banned addresses from a text file; the jail name is informational."""

    def __init__(self, file_path: str):
        self.file_path = file_path

    def banned_addresses(self, jail: str) -> Set[str]:
        path = Path(self.file_path)
        if not path.exists():
            raise DependencyMissing(self.file_path, "ban list file not found")
        tokens = []
        with open(path, "r") as f:
            for line in f:
                line = line.split("#", 1)[0]
                tokens.extend(re.split(r"[\s,]+", line))
        addresses = extract_addresses(tokens)
        logger.info(
            f"Loaded {len(addresses)} banned address(es) for jail '{jail}' from {self.file_path}"
        )
        return addresses


def parse_banned_ip_list(status_output: str) -> List[str]:
    """Tokens following "Banned IP list:" in `fail2ban-client status <jail>`."""
    tokens = []
    capturing = False
    for line in status_output.splitlines():
        if not capturing:
            if "Banned IP list:" not in line:
                continue
            capturing = True
            line = line.split("Banned IP list:", 1)[1]
        tokens.extend(line.split())
    return tokens


def parse_jail_list(status_output: str) -> List[str]:
    """
    Parses `fail2ban-client status`, tolerating the tree glyphs it prints:

        |- Number of jail:      2
        `- Jail list:   sshd, apache-signup-abuse
    """
    jails = set()
    for line in status_output.splitlines():
        if "Jail list:" not in line:
            continue
        for name in re.split(r"[\s,|]+", line.split("Jail list:", 1)[1]):
            if name:
                jails.add(name)
    return sorted(jails)


def classify_client_failure(message: str, jail: Optional[str] = None) -> Optional[EscalationError]:
    """
    Maps a failed fail2ban-client answer to the error it stands for.

    Returns None when the message is not recognised.
    """
    lowered = message.lower()
    if jail and "does not exist" in lowered:
        return ConfigurationError("--jail", f"fail2ban has no jail named '{jail}'")
    if "permission denied" in lowered:
        return DependencyMissing(
            FAIL2BAN_CLIENT, "permission denied on the fail2ban socket, try running with sudo"
        )
    if any(marker in lowered for marker in SERVER_DOWN_MARKERS):
        return DependencyMissing(
            FAIL2BAN_CLIENT, "the fail2ban server is not running or its socket is unreachable"
        )
    return None
