"""
Import Normalizer Module

Turns heterogeneous tabular input (delimited text, spreadsheet row-sets,
.xlsx workbooks and JSON export documents) into normalized loan candidates.

Column headers are matched against a synonym dictionary. When a mapped cell
is blank or unusable, a separate sniffing pass looks at every cell in the
row for a value of the right shape. Rows that still lack a required value
are skipped with a reason; input that cannot be read at all, or that lacks a
required column, raises ParseError before anything else happens.
"""

from decimal import Decimal, InvalidOperation
from datetime import date, datetime
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union
import asyncio
import csv
import io
import json
import logging
import re

from dateutil import parser as date_parser
from openpyxl import load_workbook
from openpyxl.utils.datetime import from_excel

from .amortization import calculate_end_date
from .exceptions import ParseError, ValidationError
from .models import (
    Communication, LoanCandidate, Note, Obligation, Payment, SkippedRecord, to_decimal
)


logger = logging.getLogger(__name__)


REQUIRED_FIELDS = ("borrower", "amount", "interest_rate", "term_months", "start_date")
OPTIONAL_FIELDS = ("end_date", "borrower_email", "borrower_phone", "loan_officer", "status")

FIELD_SYNONYMS: Dict[str, Tuple[str, ...]] = {
    "borrower": (
        "borrower", "borrower name", "name", "customer name", "client name",
        "applicant name", "customer", "client", "id", "customer id", "client id",
    ),
    "amount": (
        "amount", "loan amount", "principal", "principal amount", "loan principal",
        "loan value", "funded amount", "disbursed amount",
    ),
    "interest_rate": (
        "interestrate", "interest rate", "apr", "rate", "annual rate", "interest", "int rate",
    ),
    "term_months": (
        "term", "loan term", "months", "duration", "tenure", "loan duration",
        "loan tenure", "period",
    ),
    "start_date": (
        "startdate", "start date", "issue date", "disbursement date", "origination date",
        "loan date", "opening date", "date",
    ),
    "end_date": ("enddate", "end date", "maturity date", "due date", "closing date"),
    "borrower_email": (
        "borroweremail", "borrower email", "email", "customer email", "client email",
        "e mail",
    ),
    "borrower_phone": (
        "borrowerphone", "borrower phone", "phone", "customer phone", "client phone", "contact",
    ),
    "loan_officer": ("loanofficer", "loan officer", "officer"),
    "status": ("status", "loan status", "current status"),
}

# Human-readable names for the required columns, used in ParseError messages
REQUIRED_COLUMN_LABELS = {
    "borrower": "borrower/name/customer",
    "amount": "amount/principal",
    "interest_rate": "interest rate/apr",
    "term_months": "term/months/duration",
    "start_date": "start date/issue date",
}

# Too ambiguous to match inside a longer header ("Loan ID" is not a borrower)
_EXACT_ONLY_SYNONYMS = frozenset({"id"})

_SYNONYM_LOOKUP: Dict[str, str] = {
    synonym: canonical
    for canonical, synonyms in FIELD_SYNONYMS.items()
    for synonym in synonyms
}

_SUBSTRING_SYNONYMS = sorted(
    (s for s in _SYNONYM_LOOKUP if s not in _EXACT_ONLY_SYNONYMS),
    key=len,
    reverse=True,
)

_DATE_PATTERNS = (
    re.compile(r"^\d{4}-\d{2}-\d{2}"),
    re.compile(r"^\d{2}/\d{2}/\d{4}"),
    re.compile(r"^\d{2}-\d{2}-\d{4}"),
)
_ISO_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_PARSE_DEFAULTS = (datetime(2000, 1, 1), datetime(2001, 2, 2))
_LEADING_NUMBER_RE = re.compile(r"^[-+]?(\d+(\.\d*)?|\.\d+)")
_STRICT_NUMBER_RE = re.compile(r"^[-+]?(\d+(\.\d*)?|\.\d+)$")
_CAMEL_RE = re.compile(r"(?<!^)(?=[A-Z])")

SUPPORTED_EXTENSIONS = (".csv", ".txt", ".tsv", ".xlsx", ".json")


@dataclass
class ImportBatch:
    """Normalized import: accepted candidates plus rows that were skipped"""
    candidates: List[LoanCandidate] = field(default_factory=list)
    skipped: List[SkippedRecord] = field(default_factory=list)
    column_mapping: Dict[str, str] = field(default_factory=dict)
    total_rows: int = 0


# ---------------------------------------------------------------------------
# Header mapping
# ---------------------------------------------------------------------------

def normalize_header(header: Any) -> str:
    """Lower-case a header and collapse underscores, hyphens and whitespace to single spaces"""
    if header is None:
        return ""
    return re.sub(r"[_\s-]+", " ", str(header)).strip().lower()


def map_header(header: Any) -> Optional[str]:
    """
    Map a source column header to a canonical field name.

    Exact synonym matches win; otherwise the longest synonym appearing as
    whole words inside the header is used ("Loan Amount (USD)" -> amount).
    """
    normalized = normalize_header(header)
    if not normalized:
        return None

    if normalized in _SYNONYM_LOOKUP:
        return _SYNONYM_LOOKUP[normalized]

    for synonym in _SUBSTRING_SYNONYMS:
        if re.search(rf"\b{re.escape(synonym)}\b", normalized):
            return _SYNONYM_LOOKUP[synonym]

    return None


def map_headers(headers: Sequence[Any]) -> Dict[str, List[int]]:
    """Canonical field -> column indices carrying it, in column order"""
    columns: Dict[str, List[int]] = {}
    for index, header in enumerate(headers):
        canonical = map_header(header)
        if canonical:
            columns.setdefault(canonical, []).append(index)
    return columns


def check_required_columns(headers: Sequence[Any], columns: Mapping[str, List[int]]) -> None:
    """Raise ParseError listing found and required columns if any required field is unmapped"""
    missing = [f for f in REQUIRED_FIELDS if f not in columns]
    if missing:
        raise ParseError(
            "Missing required columns: " + ", ".join(REQUIRED_COLUMN_LABELS[f] for f in missing),
            found_columns=[str(h) for h in headers if h not in (None, "")],
            required_columns=[REQUIRED_COLUMN_LABELS[f] for f in REQUIRED_FIELDS],
        )


# ---------------------------------------------------------------------------
# Cell value parsing
# ---------------------------------------------------------------------------

def _cell_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value).strip()


def _clean_numeric_text(text: str) -> str:
    return text.replace(",", "").replace("$", "").replace("%", "").strip()


def parse_decimal(value: Any) -> Optional[Decimal]:
    """Leading number of a cell ("5.5%" -> 5.5, "$1,200" -> 1200), or None"""
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float, Decimal)):
        return to_decimal(value)
    match = _LEADING_NUMBER_RE.match(_clean_numeric_text(_cell_text(value)))
    if not match:
        return None
    try:
        return Decimal(match.group(0))
    except InvalidOperation:
        return None


def parse_strict_decimal(value: Any) -> Optional[Decimal]:
    """Number only if the whole cell is numeric; used by the sniffing pass"""
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float, Decimal)):
        return to_decimal(value)
    text = _clean_numeric_text(_cell_text(value))
    if not _STRICT_NUMBER_RE.match(text):
        return None
    return Decimal(text)


def parse_term(value: Any) -> Optional[int]:
    number = parse_decimal(value)
    if number is None:
        return None
    return int(number)


def _looks_like_date(text: str) -> bool:
    return any(pattern.match(text) for pattern in _DATE_PATTERNS)


def normalize_date(value: Any) -> Optional[date]:
    """
    Resolve a cell to a calendar date.

    ISO dates pass straight through; spreadsheet serial numbers are converted;
    other text goes through a generic parse and finally a split on - or /
    (MM/DD/YYYY when the last part has four digits, otherwise DD/MM/YY in
    the 2000s). Returns None when nothing works.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        try:
            converted = from_excel(value)
        except (ValueError, OverflowError, TypeError):
            return None
        return converted.date() if isinstance(converted, datetime) else None

    text = _cell_text(value)

    if _ISO_DATE_RE.match(text):
        try:
            return date.fromisoformat(text)
        except ValueError:
            return None

    # Parsing against two different defaults shows whether any part was
    # filled in rather than read; a partial date ("2024", "Jan 2024") is rejected
    try:
        parsed = [date_parser.parse(text, default=d).date() for d in _PARSE_DEFAULTS]
    except (ValueError, OverflowError):
        parsed = []
    if parsed and parsed[0] == parsed[1]:
        return parsed[0]

    parts = re.split(r"[-/]", text)
    if len(parts) != 3 or not all(p.isdigit() for p in parts):
        return None
    try:
        if len(parts[2]) == 4:
            return date(int(parts[2]), int(parts[0]), int(parts[1]))
        return date(int("20" + parts[2][-2:].zfill(2)), int(parts[1]), int(parts[0]))
    except ValueError:
        return None


# ---------------------------------------------------------------------------
# Row extraction
# ---------------------------------------------------------------------------

def sniff_row_values(cells: Sequence[Any]) -> Dict[str, Any]:
    """
    Best-effort guesses for required fields from cell shapes alone.

    First numeric cell over 1000 is the amount, first in (0, 100) the rate,
    first integer in (0, 600) the term, first date-shaped cell the start
    date, and first text that is neither numeric nor a date the borrower.
    The first match wins for each field.
    """
    guesses: Dict[str, Any] = {}

    for cell in cells:
        text = _cell_text(cell)
        if not text and not isinstance(cell, (date, datetime)):
            continue

        if isinstance(cell, (date, datetime)) or _looks_like_date(text):
            guesses.setdefault("start_date", cell)
            continue

        number = parse_strict_decimal(cell)
        if number is None:
            guesses.setdefault("borrower", text)
            continue

        if number > 1000:
            guesses.setdefault("amount", number)
        if 0 < number < 100:
            guesses.setdefault("interest_rate", number)
        if number == number.to_integral_value() and 0 < number < 600:
            guesses.setdefault("term_months", int(number))

    return guesses


def _first_value(cells: Sequence[Any], indices: Iterable[int]) -> Any:
    for index in indices:
        if index < len(cells) and _cell_text(cells[index]) != "":
            return cells[index]
    return None


def _optional_text(value: Any) -> Optional[str]:
    text = _cell_text(value)
    return text or None


def extract_candidate(cells: Sequence[Any], columns: Mapping[str, List[int]],
                      row_number: int) -> LoanCandidate:
    """
    Build a candidate from one row.

    Raises:
        ValidationError: If a required value is missing or non-positive after
            both the mapped column and the sniffing pass have been tried
    """
    mapped = {name: _first_value(cells, indices) for name, indices in columns.items()}
    sniffed: Optional[Dict[str, Any]] = None

    def fallback(field_name: str) -> Any:
        nonlocal sniffed
        if sniffed is None:
            sniffed = sniff_row_values(cells)
        return sniffed.get(field_name)

    borrower = _cell_text(mapped.get("borrower"))
    if not borrower:
        borrower = _cell_text(fallback("borrower"))
    if not borrower:
        raise ValidationError("Borrower is empty", field="borrower", row=row_number)

    amount = parse_decimal(mapped.get("amount"))
    if amount is None or amount <= 0:
        amount = fallback("amount")
    if amount is None or amount <= 0:
        raise ValidationError("Amount is missing or not positive", field="amount", row=row_number)

    rate = parse_decimal(mapped.get("interest_rate"))
    if rate is None or rate <= 0:
        rate = fallback("interest_rate")
    if rate is None or rate <= 0:
        raise ValidationError(
            "Interest rate is missing or not positive", field="interest_rate", row=row_number
        )

    term = parse_term(mapped.get("term_months"))
    if term is None or term <= 0:
        term = fallback("term_months")
    if term is None or term <= 0:
        raise ValidationError("Term is missing or not positive", field="term_months", row=row_number)

    start_date = normalize_date(mapped.get("start_date"))
    if start_date is None:
        start_date = normalize_date(fallback("start_date"))
    if start_date is None:
        raise ValidationError("Start date cannot be resolved", field="start_date", row=row_number)

    end_date = normalize_date(mapped.get("end_date")) or calculate_end_date(start_date, term)

    return LoanCandidate(
        borrower=borrower,
        amount=amount,
        interest_rate=rate,
        term_months=term,
        start_date=start_date,
        end_date=end_date,
        borrower_email=_optional_text(mapped.get("borrower_email")),
        borrower_phone=_optional_text(mapped.get("borrower_phone")),
        loan_officer=_optional_text(mapped.get("loan_officer")),
        status=_optional_text(mapped.get("status")),
        source_row=row_number,
    )


def normalize_rows(headers: Sequence[Any], rows: Sequence[Sequence[Any]],
                   max_rows: Optional[int] = None) -> ImportBatch:
    """
    Normalize a header row plus data rows into candidates.

    Args:
        headers: Column headers as they appear in the source
        rows: Data rows; short rows are padded and long rows truncated
        max_rows: Reject the whole input when it has more data rows than this

    Raises:
        ParseError: If there are no data rows, too many rows, or a required
            column is missing
    """
    if not rows:
        raise ParseError("Import must have at least a header row and one data row")
    if max_rows is not None and len(rows) > max_rows:
        raise ParseError(f"Import has {len(rows)} rows, more than the limit of {max_rows}")

    columns = map_headers(headers)
    check_required_columns(headers, columns)

    batch = ImportBatch(
        column_mapping={
            str(headers[i]): canonical for canonical, indices in columns.items() for i in indices
        },
        total_rows=len(rows),
    )
    width = len(headers)

    # Row numbers count the header as row 1, matching what a spreadsheet shows
    for offset, row in enumerate(rows):
        row_number = offset + 2
        cells = list(row)
        if len(cells) < width:
            logger.debug(f"Row {row_number} has {len(cells)} columns, expected {width}; padding")
            cells.extend([""] * (width - len(cells)))
        elif len(cells) > width:
            logger.debug(f"Row {row_number} has {len(cells)} columns, expected {width}; truncating")
            cells = cells[:width]

        try:
            batch.candidates.append(extract_candidate(cells, columns, row_number))
        except ValidationError as e:
            logger.warning(f"Skipping row {row_number}: {e}")
            batch.skipped.append(SkippedRecord(
                row=row_number,
                reason=str(e),
                field=e.field,
                borrower=_optional_text(_first_value(cells, columns.get("borrower", []))),
            ))

    logger.info(
        f"Normalized {len(batch.candidates)} of {batch.total_rows} rows "
        f"({len(batch.skipped)} skipped)"
    )
    return batch


# ---------------------------------------------------------------------------
# Source formats
# ---------------------------------------------------------------------------

def parse_delimited_text(text: str, delimiter: str = ",",
                         max_rows: Optional[int] = None) -> ImportBatch:
    """Normalize delimited text (double-quote escaping, blank lines ignored)"""
    if not isinstance(delimiter, str) or len(delimiter) != 1:
        raise ParseError(f"Delimiter must be a single character, got {delimiter!r}")
    reader = csv.reader(io.StringIO(text.lstrip("\ufeff")), delimiter=delimiter)
    try:
        lines = [row for row in reader if any(cell.strip() for cell in row)]
    except csv.Error as e:
        raise ParseError(f"Malformed delimited text: {e}")

    if len(lines) < 2:
        raise ParseError("Import must have at least a header row and one data row")

    headers = [cell.strip() for cell in lines[0]]
    rows = [[cell.strip() for cell in line] for line in lines[1:]]
    return normalize_rows(headers, rows, max_rows=max_rows)


def parse_spreadsheet_rows(records: Sequence[Mapping[str, Any]],
                           max_rows: Optional[int] = None) -> ImportBatch:
    """Normalize a spreadsheet row-set: one mapping of column header to cell per row"""
    if not records:
        raise ParseError("Spreadsheet is empty")

    headers: List[str] = []
    for record in records:
        if not isinstance(record, Mapping):
            raise ParseError(f"Spreadsheet rows must be mappings, got {type(record).__name__}")
        for key in record:
            if key not in headers:
                headers.append(key)

    rows = [[record.get(header, "") for header in headers] for record in records]
    return normalize_rows(headers, rows, max_rows=max_rows)


def read_xlsx_rows(source: Union[str, Path, io.BytesIO]) -> List[Dict[str, Any]]:
    """
    Read the first worksheet of an .xlsx workbook as a row-set.

    The first non-blank row is the header; duplicate header names get a
    numeric suffix. Cached formula values are used.
    """
    try:
        workbook = load_workbook(source, read_only=True, data_only=True)
    except Exception as e:
        raise ParseError(f"Cannot open workbook: {e}")

    try:
        sheet = workbook.worksheets[0]
        header: Optional[List[str]] = None
        records: List[Dict[str, Any]] = []

        for values in sheet.iter_rows(values_only=True):
            if all(_cell_text(v) == "" for v in values):
                continue
            if header is None:
                header = []
                seen: Dict[str, int] = {}
                for index, value in enumerate(values):
                    name = re.sub(r"\s+", " ", _cell_text(value)) or f"column_{index + 1}"
                    if name in seen:
                        seen[name] += 1
                        name = f"{name}_{seen[name]}"
                    else:
                        seen[name] = 0
                    header.append(name)
                continue
            records.append({
                header[i]: (values[i] if i < len(values) and values[i] is not None else "")
                for i in range(len(header))
            })
    finally:
        workbook.close()

    if header is None:
        raise ParseError("Spreadsheet is empty")
    return records


def parse_xlsx(source: Union[str, Path, io.BytesIO], max_rows: Optional[int] = None) -> ImportBatch:
    records = read_xlsx_rows(source)
    if not records:
        raise ParseError("Import must have at least a header row and one data row")
    return parse_spreadsheet_rows(records, max_rows=max_rows)


def _snake_case_keys(value: Any) -> Any:
    """Recursively convert camelCase mapping keys to snake_case"""
    if isinstance(value, list):
        return [_snake_case_keys(item) for item in value]
    if isinstance(value, dict):
        return {_CAMEL_RE.sub("_", key).lower(): _snake_case_keys(item) for key, item in value.items()}
    return value


def _history_records(data: Mapping[str, Any], name: str, loan_id: str,
                     position: int) -> List[Dict[str, Any]]:
    """A history list from an exported record; every entry must be an object"""
    records = data.get(name) or []
    if not isinstance(records, list) or not all(isinstance(r, dict) for r in records):
        raise ValidationError(f"Loan record {loan_id} has malformed {name}", field=name, row=position)
    return records


def _export_record_to_candidate(record: Mapping[str, Any], position: int) -> LoanCandidate:
    data = _snake_case_keys(dict(record))
    if "term" in data and "term_months" not in data:
        data["term_months"] = data["term"]

    missing = [name for name in ("id", "borrower", "amount") if not data.get(name)]
    if missing:
        raise ValidationError(
            f"Loan record is missing required fields: {', '.join(missing)}", row=position
        )

    amount = parse_decimal(data.get("amount"))
    rate = parse_decimal(data.get("interest_rate"))
    term = parse_term(data.get("term_months"))
    start_date = normalize_date(data.get("start_date"))
    if amount is None or amount <= 0:
        raise ValidationError("Amount is missing or not positive", field="amount", row=position)
    if rate is None or rate < 0:
        raise ValidationError("Interest rate is invalid", field="interest_rate", row=position)
    if term is None or term <= 0:
        raise ValidationError("Term is missing or not positive", field="term_months", row=position)
    if start_date is None:
        raise ValidationError("Start date cannot be resolved", field="start_date", row=position)

    loan_id = str(data["id"])
    history = {
        name: _history_records(data, name, loan_id, position)
        for name in ("payment_schedule", "obligations", "notes", "communications")
    }
    tags = data.get("tags") or []
    if not isinstance(tags, list):
        raise ValidationError(f"Loan record {loan_id} has malformed tags", field="tags", row=position)

    try:
        for item in history["communications"]:
            item.setdefault("loan_id", loan_id)
        return LoanCandidate(
            id=loan_id,
            borrower=str(data["borrower"]).strip(),
            amount=amount,
            interest_rate=rate,
            term_months=term,
            start_date=start_date,
            end_date=normalize_date(data.get("end_date")) or calculate_end_date(start_date, term),
            borrower_email=data.get("borrower_email") or None,
            borrower_phone=data.get("borrower_phone") or None,
            loan_officer=data.get("loan_officer") or None,
            status=data.get("status"),
            payment_schedule=[Payment.from_dict(p) for p in history["payment_schedule"]],
            obligations=[Obligation.from_dict(o) for o in history["obligations"]],
            notes=[Note.from_dict(n) for n in history["notes"]],
            communications=[Communication.from_dict(c) for c in history["communications"]],
            tags=[str(tag) for tag in tags],
            source_row=position,
        )
    except ValidationError:
        raise
    except (KeyError, ValueError, TypeError, AttributeError) as e:
        raise ValidationError(f"Loan record {loan_id} has malformed history: {e}", row=position)


def parse_export_document(document: Union[str, bytes, Mapping[str, Any], list]) -> ImportBatch:
    """
    Read a ledger export back into candidates.

    Accepts the export envelope ({"version", "exportDate", "loanCount",
    "loans"}) or a bare list of loans, with snake_case or camelCase keys.
    Candidates keep their ids and full history.
    """
    if isinstance(document, (str, bytes)):
        try:
            document = json.loads(document)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise ParseError(f"Invalid JSON: {e}")

    if isinstance(document, Mapping):
        loans = document.get("loans")
    else:
        loans = document
    if not isinstance(loans, list):
        raise ParseError("Invalid file format: expected a list of loans or an object with a 'loans' array")

    batch = ImportBatch(total_rows=len(loans))
    for position, record in enumerate(loans, start=1):
        if not isinstance(record, Mapping):
            batch.skipped.append(SkippedRecord(row=position, reason="Loan record is not an object"))
            continue
        try:
            batch.candidates.append(_export_record_to_candidate(record, position))
        except ValidationError as e:
            logger.warning(f"Skipping exported loan {position}: {e}")
            batch.skipped.append(SkippedRecord(
                row=position, reason=str(e), field=e.field, borrower=record.get("borrower")
            ))
    return batch


def read_import_file(path: Union[str, Path], max_rows: Optional[int] = None) -> ImportBatch:
    """
    Read and normalize an import file, dispatching on its extension.

    Raises:
        ParseError: If the file cannot be read, has an unsupported extension,
            or its content is malformed
    """
    path = Path(path)
    suffix = path.suffix.lower()
    if suffix not in SUPPORTED_EXTENSIONS:
        raise ParseError(
            f"Unsupported file type '{suffix or path.name}'. "
            f"Supported: {', '.join(SUPPORTED_EXTENSIONS)}"
        )

    try:
        if suffix == ".xlsx":
            return parse_xlsx(path, max_rows=max_rows)
        text = path.read_text(encoding="utf-8-sig")
    except (OSError, UnicodeDecodeError) as e:
        raise ParseError(f"Cannot read {path}: {e}")

    if suffix == ".json":
        return parse_export_document(text)
    delimiter = "\t" if suffix == ".tsv" else ","
    return parse_delimited_text(text, delimiter=delimiter, max_rows=max_rows)


async def aread_import_file(path: Union[str, Path], max_rows: Optional[int] = None) -> ImportBatch:
    """Read an import file off the event loop; failures surface as ParseError"""
    return await asyncio.to_thread(read_import_file, path, max_rows)


ImportSource = Union[str, Path, Sequence[Mapping[str, Any]], ImportBatch]


def load_import_source(source: ImportSource, max_rows: Optional[int] = None) -> ImportBatch:
    """
    Normalize any supported import source.

    Strings are delimited text, Paths are files, sequences of mappings are
    spreadsheet row-sets, and an ImportBatch is passed through unchanged.
    """
    if isinstance(source, ImportBatch):
        return source
    if isinstance(source, Path):
        return read_import_file(source, max_rows=max_rows)
    if isinstance(source, str):
        return parse_delimited_text(source, max_rows=max_rows)
    if isinstance(source, Sequence):
        return parse_spreadsheet_rows(source, max_rows=max_rows)
    raise ParseError(f"Unsupported import source: {type(source).__name__}")
