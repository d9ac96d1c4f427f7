"""
Helpers for reading values out of parser output.

Parsers (and staff edits) are loose about key names and value formats, so every
read goes through an alias table and every date/amount through a forgiving
converter that falls back to a default instead of raising.
"""
import logging
import re
from datetime import datetime, timezone

logger = logging.getLogger(__name__)

FIELD_ALIASES = {
    "account_number": ["account_number", "accountNumber", "account_no", "accountNo",
                       "customer_number", "customerNumber", "account"],
    "document_number": ["document_number", "documentNumber", "invoice_number", "invoiceNumber",
                        "credit_number", "creditNumber", "credit_note_number", "statement_number"],
    "document_type": ["document_type", "documentType", "type"],
    "date": ["date", "invoice_date", "invoiceDate", "issue_date", "issueDate", "tax_point", "taxPoint"],
    "amount": ["amount", "total", "total_amount", "totalAmount", "gross_amount"],
    "vat_amount": ["vat_amount", "vatAmount", "vat", "tax_amount", "taxAmount"],
    "period_end": ["period_end", "periodEnd", "statement_date"],
}

DATE_FORMATS = [
    "%d/%m/%Y", "%d/%m/%y",
    "%d-%m-%Y", "%d-%m-%y",
    "%d.%m.%Y", "%d.%m.%y",
    "%Y-%m-%d", "%Y/%m/%d",
    "%d %b %Y", "%d %B %Y", "%d %b %y", "%d %B %y",
    "%b %d, %Y", "%B %d, %Y",
]

# Years outside this window are treated as misreads, not real document dates.
MIN_YEAR, MAX_YEAR = 1900, 2100

_AMOUNT_JUNK = re.compile(r"[^\d.\-]")


def get_parsed_value(parsed_data: dict | None, field: str):
    """Return the first non-blank value stored under any alias of ``field``."""
    if not parsed_data:
        return None
    for key in FIELD_ALIASES.get(field, [field]):
        value = parsed_data.get(key)
        if value is None:
            continue
        if isinstance(value, str) and not value.strip():
            continue
        return value
    return None


def parse_date(value, default: datetime | None = None) -> datetime:
    """Parse a document date; unparseable input yields ``default`` (now if not given)."""
    fallback = default or datetime.now(timezone.utc)
    if value is None:
        return fallback
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)

    text = str(value).strip()
    parsed = None
    for fmt in DATE_FORMATS:
        try:
            parsed = datetime.strptime(text, fmt)
            break
        except ValueError:
            continue
    if parsed is None:
        try:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            parsed = None

    if parsed is not None and MIN_YEAR <= parsed.year <= MAX_YEAR:
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)

    logger.warning("Could not parse date %r, using fallback", text)
    return fallback


def parse_amount(value) -> float:
    """Parse a money amount, tolerating currency symbols and separators. Junk becomes 0."""
    if value is None or isinstance(value, bool):
        return 0.0
    if isinstance(value, (int, float)):
        return float(value)

    text = str(value).strip()
    negative = text.startswith("(") and text.endswith(")")
    if text.endswith("-") or text.upper().endswith("CR"):
        negative = True
    cleaned = _AMOUNT_JUNK.sub("", text.replace(",", ""))
    if "-" in cleaned:
        negative = True
        cleaned = cleaned.replace("-", "")
    try:
        amount = float(cleaned)
    except ValueError:
        logger.warning("Could not parse amount %r, using 0", text)
        return 0.0
    return -abs(amount) if negative else amount


def classify_document_type(parsed_data: dict | None) -> str:
    """Map the declared document type onto invoice / credit_note / statement."""
    declared = str(get_parsed_value(parsed_data, "document_type") or "").lower()
    if "credit" in declared or declared == "cn":
        return "credit_note"
    if "statement" in declared:
        return "statement"
    return "invoice"
