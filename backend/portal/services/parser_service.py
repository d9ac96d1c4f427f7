"""
Field extraction from stored PDF / Excel / text files.

The allocator only depends on the ``Parser`` protocol. ``TextFieldParser`` is the
default: it pulls text out of the file and picks labelled values
("Account No: 12345") with regular expressions. Template-driven extraction plugs
in behind the same protocol.
"""
import logging
import re
from pathlib import Path
from typing import Protocol

from portal.errors import ParserError

logger = logging.getLogger(__name__)

LABEL_PATTERNS = {
    "account_number": r"(?:account|acct|customer)\s*(?:no\.?|number|#|ref(?:erence)?)\s*[:#]?\s*([A-Za-z0-9\-/]+)",
    "document_number": r"(?:invoice|credit\s*note|statement|document)\s*(?:no\.?|number|#)\s*[:#]?\s*([A-Za-z0-9\-/]+)",
    "date": r"(?:invoice\s*date|tax\s*point|date\s*of\s*issue|statement\s*date|date)\s*[:#]?\s*([0-9]{1,4}[./\-][0-9]{1,2}[./\-][0-9]{2,4}|[0-9]{1,2}\s+[A-Za-z]{3,9}\s+[0-9]{2,4})",
    "amount": r"(?:total\s*(?:due|amount)?|amount\s*due|balance\s*due)\s*[:#]?\s*([£$€]?\s*-?[0-9][0-9,]*\.?[0-9]*)",
    "vat_amount": r"(?:vat|tax)\s*(?:amount|total)?\s*[:#]?\s*([£$€]?\s*-?[0-9][0-9,]*\.?[0-9]*)",
}

_COMPILED = {name: re.compile(pattern, re.IGNORECASE) for name, pattern in LABEL_PATTERNS.items()}


class Parser(Protocol):
    def parse(self, file_path: Path) -> dict: ...


def extract_text_from_file(file_path: Path) -> str:
    """Extract readable text from a stored document file."""
    suffix = file_path.suffix.lower()

    if suffix == ".pdf":
        import pypdf
        reader = pypdf.PdfReader(str(file_path))
        return "\n".join(page.extract_text() or "" for page in reader.pages)

    if suffix in (".xlsx", ".xlsm"):
        from openpyxl import load_workbook
        workbook = load_workbook(file_path, data_only=True, read_only=True)
        lines = []
        for worksheet in workbook.worksheets:
            for row in worksheet.iter_rows(values_only=True):
                cells = [str(cell).strip() for cell in row if cell is not None and str(cell).strip()]
                if cells:
                    # "Label | Value" rows read like "Label: Value"
                    lines.append(": ".join(cells) if len(cells) == 2 else " ".join(cells))
        workbook.close()
        return "\n".join(lines)

    return file_path.read_text(encoding="utf-8", errors="ignore")


def detect_document_type(text: str) -> str:
    head = text[:2000].lower()
    if "credit note" in head or "credit memo" in head:
        return "credit_note"
    if "statement" in head:
        return "statement"
    return "invoice"


class TextFieldParser:
    def parse(self, file_path: Path) -> dict:
        try:
            text = extract_text_from_file(file_path)
        except Exception as exc:
            raise ParserError(f"Failed to read {file_path.name}: {exc}") from exc

        if not text.strip():
            raise ParserError(f"No extractable text in {file_path.name}")

        fields: dict = {"document_type": detect_document_type(text)}
        for name, pattern in _COMPILED.items():
            match = pattern.search(text)
            if match:
                fields[name] = match.group(1).strip()
        logger.debug("Parsed %s: %s", file_path.name, sorted(fields))
        return fields
