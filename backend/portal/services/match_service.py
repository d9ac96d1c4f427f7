"""
Account-number to company matching.

Strategies run in a fixed order and the first hit wins:

1. ``reference_no``   - digits of the account number as an integer reference number
2. ``code``           - short code equal to the raw or digit-only account number
3. ``reference_text`` - reference number rendered as text, raw or digit-only

Reference numbers are authoritative, codes are stable secondary identifiers and
the text comparison is the loosest. Reordering changes which company wins when a
code and a reference number share a value.
"""
import logging
import re
from dataclasses import dataclass, field

from portal.models.company import Company
from portal.services.company_directory import CompanyDirectory

logger = logging.getLogger(__name__)

_NON_DIGITS = re.compile(r"\D")


@dataclass
class AccountCandidates:
    raw: str
    digits: str

    @property
    def as_int(self) -> int | None:
        if not self.digits:
            return None
        value = int(self.digits)
        # SQLite integers are signed 64-bit.
        return value if value < 2**63 else None


@dataclass
class MatchResult:
    company: Company | None
    strategy: str | None
    candidates: AccountCandidates | None
    attempts: list[dict] = field(default_factory=list)

    @property
    def matched(self) -> bool:
        return self.company is not None

    def diagnostics(self) -> dict:
        return {
            "raw": self.candidates.raw if self.candidates else None,
            "digits": self.candidates.digits if self.candidates else None,
            "attempts": self.attempts,
        }


def normalize_account_number(value) -> AccountCandidates | None:
    if value is None:
        return None
    raw = str(value).strip()
    if not raw:
        return None
    return AccountCandidates(raw=raw, digits=_NON_DIGITS.sub("", raw))


class MatchingEngine:
    def __init__(self, directory: CompanyDirectory):
        self.directory = directory

    def match(self, account_number) -> MatchResult:
        candidates = normalize_account_number(account_number)
        if candidates is None:
            return MatchResult(company=None, strategy=None, candidates=None)

        attempts: list[dict] = []
        strategies = [
            ("reference_no", candidates.as_int, self._by_reference_no),
            ("code", [candidates.raw, candidates.digits], self.directory.by_code),
            ("reference_text", [candidates.raw, candidates.digits], self.directory.by_reference_text),
        ]
        for name, value, lookup in strategies:
            company = lookup(value)
            attempts.append({"strategy": name, "value": value, "matched": company is not None})
            if company is not None:
                logger.info(
                    "Matched account %r to company %s (%s) via %s",
                    candidates.raw, company.name, company.id, name,
                )
                return MatchResult(company=company, strategy=name, candidates=candidates, attempts=attempts)

        logger.info("No company matches account %r (digits %r)", candidates.raw, candidates.digits)
        return MatchResult(company=None, strategy=None, candidates=candidates, attempts=attempts)

    def _by_reference_no(self, value: int | None) -> Company | None:
        if value is None:
            return None
        return self.directory.by_reference_no(value)
