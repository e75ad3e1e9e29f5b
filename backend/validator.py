"""
Record validation for uploaded address lists.

A RecordValidator locates the email value in one CSV record and hands it to a
pluggable strategy:

- SyntaxStrategy: local-part / domain structure only, no network access.
- DomainRiskStrategy: syntax, disposable and role-based checks, then an MX
  lookup. Inconclusive DNS answers are reported as Risky, never Invalid.
"""

import logging
import re
from collections.abc import Callable, Mapping
from typing import NamedTuple

import dns.exception
import dns.resolver

import csv_utils
from domain_cache import DomainCache

logger = logging.getLogger(__name__)

# Outcome values written to the "Validation Status" column
VALID = "Valid"
INVALID = "Invalid"
RISKY = "Risky"
OUTCOMES = (VALID, INVALID, RISKY)

# Local part: dot-separated atoms of RFC 5322 atext
# Domain: at least two LDH labels, alphabetic TLD
EMAIL_REGEX = re.compile(
    r"^[A-Za-z0-9!#$%&'*+/=?^_`{|}~-]+(\.[A-Za-z0-9!#$%&'*+/=?^_`{|}~-]+)*"
    r"@(?:[A-Za-z0-9](?:[A-Za-z0-9-]{0,61}[A-Za-z0-9])?\.)+[A-Za-z]{2,63}$"
)
MAX_LOCAL_LENGTH = 64
MAX_EMAIL_LENGTH = 254

DISPOSABLE_DOMAINS = {
    "mailinator.com",
    "10minutemail.com",
    "guerrillamail.com",
    "tempmail.com",
    "yopmail.com",
    "trashmail.com",
}
ROLE_BASED_PREFIXES = {"info", "support", "admin", "sales", "contact", "noreply", "no-reply"}


class ValidationResult(NamedTuple):
    status: str
    reason: str = ""


class SyntaxStrategy:
    """Structural check of a normalized address."""

    name = "syntax"

    def check(self, email: str) -> ValidationResult:
        if len(email) > MAX_EMAIL_LENGTH:
            return ValidationResult(INVALID, "bad_syntax")
        local = email.rsplit("@", 1)[0]
        if len(local) > MAX_LOCAL_LENGTH or not EMAIL_REGEX.match(email):
            return ValidationResult(INVALID, "bad_syntax")
        return ValidationResult(VALID)


class DomainRiskStrategy(SyntaxStrategy):
    """
    Syntax check followed by domain-level risk classification.

    Definitive rejections (disposable provider, domain without mail servers)
    are Invalid; role accounts and DNS failures are Risky.

    Args:
        resolve_mx: callable returning the MX hostnames of a domain. It may
            raise dnspython exceptions. Defaults to a live lookup.
        cache: verdict cache shared across records.
        timeout: DNS lifetime in seconds for the default resolver.
    """

    name = "domain"

    def __init__(
        self,
        resolve_mx: Callable[[str], list[str]] | None = None,
        cache: DomainCache | None = None,
        timeout: float = 3.0,
    ):
        self._resolve_mx = resolve_mx or self._dns_lookup
        self._cache = cache if cache is not None else DomainCache()
        self._timeout = timeout

    def check(self, email: str) -> ValidationResult:
        result = super().check(email)
        if result.status != VALID:
            return result

        local, domain = email.rsplit("@", 1)
        if domain in DISPOSABLE_DOMAINS:
            return ValidationResult(INVALID, "disposable_domain")

        verdict = self._domain_verdict(domain)
        if verdict is not None:
            return verdict

        if local.lower() in ROLE_BASED_PREFIXES:
            return ValidationResult(RISKY, "role_based")

        return ValidationResult(VALID)

    def _domain_verdict(self, domain: str) -> ValidationResult | None:
        hit, cached = self._cache.get(domain)
        if hit:
            return ValidationResult(*cached) if cached else None

        try:
            hosts = self._resolve_mx(domain)
        except (dns.resolver.NXDOMAIN, dns.resolver.NoAnswer):
            verdict = ValidationResult(INVALID, "no_mx")
            self._cache.set(domain, verdict)
            return verdict
        except dns.exception.Timeout:
            return ValidationResult(RISKY, "dns_timeout")
        except dns.exception.DNSException as e:
            logger.debug(f"MX lookup for {domain} failed: {type(e).__name__}")
            return ValidationResult(RISKY, "dns_error")

        # A single "." exchange is a null MX (RFC 7505): the domain accepts no mail
        usable = [h for h in hosts if h and h.rstrip(".")]
        if not usable:
            verdict = ValidationResult(INVALID, "no_mx")
            self._cache.set(domain, verdict)
            return verdict

        self._cache.set(domain, None)
        return None

    def _dns_lookup(self, domain: str) -> list[str]:
        resolver = dns.resolver.Resolver()
        resolver.lifetime = self._timeout
        answers = resolver.resolve(domain, "MX")
        return [str(r.exchange) for r in answers]


class RecordValidator:
    """Classifies one CSV record. Missing or empty values are Invalid, never errors."""

    def __init__(self, strategy: SyntaxStrategy | None = None):
        self.strategy = strategy or SyntaxStrategy()

    def validate(self, record: Mapping[str, str | None]) -> ValidationResult:
        column = csv_utils.find_email_column(list(record.keys()))
        raw = (record.get(column) or "") if column is not None else ""
        if not raw.strip():
            return ValidationResult(INVALID, "empty_email")

        email = csv_utils.normalize_email(csv_utils.extract_email_from_field(raw))
        if not email:
            return ValidationResult(INVALID, "bad_syntax")

        return self.strategy.check(email)


def build_validator(mode: str, dns_timeout: float = 3.0, cache_ttl_minutes: int = 30) -> RecordValidator:
    """Create the validator selected by VALIDATOR_MODE."""
    if mode == "syntax":
        return RecordValidator(SyntaxStrategy())
    if mode == "domain":
        cache = DomainCache(ttl_minutes=cache_ttl_minutes)
        return RecordValidator(DomainRiskStrategy(cache=cache, timeout=dns_timeout))
    raise ValueError(f"Unknown validator mode: {mode}")
