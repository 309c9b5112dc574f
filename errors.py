"""
Error taxonomy for the Fail2ban escalation pipeline.

Parsing anomalies (malformed WHOIS rows, bad CIDRs) are never raised; they are
counted by the enrichment step. Everything here propagates to the run boundary.
"""

from typing import Optional


class EscalationError(Exception):
    """Base class for errors that abort a jail run."""

    pass


class ConfigurationError(EscalationError):
    """Raised when an option is missing or has an invalid value."""

    def __init__(self, option: str, message: str):
        self.option = option
        super().__init__(f"{option}: {message}")


class DependencyMissing(EscalationError):
    """Raised when a required external tool or client is not available."""

    def __init__(self, dependency: str, hint: Optional[str] = None):
        self.dependency = dependency
        self.hint = hint
        message = f"Required dependency not found: {dependency}"
        if hint:
            message += f" ({hint})"
        super().__init__(message)


class ResolutionUnavailable(EscalationError):
    """Raised when the WHOIS lookup service cannot be reached or times out."""

    pass
