"""Parser for the insider registry's semicolon separated export.

The registry (Insynsregistret, Finansinspektionen) exports search results as a
UTF-16LE text stream: one header line followed by one line per transaction.
Fields are separated by ``;`` and may be wrapped in double quotes when the
content itself contains a semicolon. Header texts, boolean words and decimal
separators depend on the language the export was requested in.

Parsing is split in two steps:

    split_line()               raw line -> list of field strings (or None)
    TransactionMapper          header -> column assignments, fields -> Transaction

``parse_transaction_lines`` wires both together for a whole response and drops
records whose quantity or price could not be parsed.
"""

from __future__ import annotations

import logging
import math
from concurrent.futures import Executor
from dataclasses import dataclass
from enum import Enum
from functools import partial
from itertools import islice
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Sequence, Set, Tuple

from insyn_transaction import Transaction, is_valid, parse_timestamp

LOGGER = logging.getLogger("insynsregistret")

DELIMITER = ";"
QUOTE = '"'
# The registry writes "&" as a JSON style escape in some fields.
AMPERSAND_ESCAPE = "\\u0026"
MAX_HEADER_COLUMNS = 32
EXECUTOR_CHUNK_SIZE = 256
BOM = "\ufeff"


class Locale(Enum):
    SWEDISH = "sv"
    ENGLISH = "en"

    @property
    def url_name(self) -> str:
        return "sv-SE" if self is Locale.SWEDISH else "en-GB"

    @classmethod
    def from_code(cls, code: str) -> "Locale":
        """Accept 'sv', 'en', 'sv-SE', 'en-GB' (case-insensitive)."""
        key = (code or "").strip().lower()[:2]
        for member in cls:
            if member.value == key:
                return member
        raise ValueError(f"Unsupported locale: {code!r}")


class FieldKind(Enum):
    TEXT = "text"
    BOOL = "bool"
    NUMBER = "number"
    TIMESTAMP = "timestamp"


FIELD_KINDS: Dict[str, FieldKind] = {
    "publication_date": FieldKind.TIMESTAMP,
    "issuer": FieldKind.TEXT,
    "lei_code": FieldKind.TEXT,
    "notifier": FieldKind.TEXT,
    "pdmr": FieldKind.TEXT,
    "position": FieldKind.TEXT,
    "is_closely_associated": FieldKind.BOOL,
    "is_amendment": FieldKind.BOOL,
    "details_of_amendment": FieldKind.TEXT,
    "is_initial_notification": FieldKind.BOOL,
    "is_linked_to_share_option_programme": FieldKind.BOOL,
    "nature_of_transaction": FieldKind.TEXT,
    "instrument_type": FieldKind.TEXT,
    "instrument_name": FieldKind.TEXT,
    "isin": FieldKind.TEXT,
    "transaction_date": FieldKind.TIMESTAMP,
    "quantity": FieldKind.NUMBER,
    "unit": FieldKind.TEXT,
    "price": FieldKind.NUMBER,
    "currency": FieldKind.TEXT,
    "trading_venue": FieldKind.TEXT,
    "status": FieldKind.TEXT,
}

# (field, header text) pairs per locale. Later pairs for the same field are
# spellings found in older exports.
HEADER_TABLE: Dict[Locale, Tuple[Tuple[str, str], ...]] = {
    Locale.SWEDISH: (
        ("publication_date", "Publiceringsdatum"),
        ("issuer", "Emittent"),
        ("lei_code", "LEI-kod"),
        ("notifier", "Anmälningsskyldig"),
        ("pdmr", "Person i ledande ställning"),
        ("position", "Befattning"),
        ("is_closely_associated", "Närstående"),
        ("is_amendment", "Korrigering"),
        ("details_of_amendment", "Beskrivning av korrigering"),
        ("is_initial_notification", "Är förstagångsrapportering"),
        ("is_linked_to_share_option_programme", "Är kopplad till aktieprogram"),
        ("nature_of_transaction", "Karaktär"),
        ("instrument_type", "Instrumenttyp"),
        ("instrument_name", "Instrumentnamn"),
        ("isin", "ISIN"),
        ("transaction_date", "Transaktionsdatum"),
        ("quantity", "Volym"),
        ("unit", "Volymsenhet"),
        ("price", "Pris"),
        ("currency", "Valuta"),
        ("trading_venue", "Handelsplats"),
        ("status", "Status"),
        ("publication_date", "Publicerings datum"),
        ("issuer", "Utgivare"),
        ("instrument_name", "Instrument"),
        ("transaction_date", "Transaktions datum"),
    ),
    Locale.ENGLISH: (
        ("publication_date", "Publication date"),
        ("issuer", "Issuer"),
        ("lei_code", "LEI-code"),
        ("notifier", "Notifier"),
        ("pdmr", "Person discharging managerial responsibilities"),
        ("position", "Position"),
        ("is_closely_associated", "Closely associated"),
        ("is_amendment", "Amendment"),
        ("details_of_amendment", "Details of amendment"),
        ("is_initial_notification", "Initial notification"),
        ("is_linked_to_share_option_programme", "Linked to share option programme"),
        ("nature_of_transaction", "Nature of transaction"),
        # Spelled this way by the registry.
        ("instrument_type", "Intrument type"),
        ("instrument_name", "Instrument name"),
        ("isin", "ISIN"),
        ("transaction_date", "Transaction date"),
        ("quantity", "Volume"),
        ("unit", "Unit"),
        ("price", "Price"),
        ("currency", "Currency"),
        ("trading_venue", "Trading venue"),
        ("status", "Status"),
        ("instrument_type", "Instrument type"),
        ("instrument_name", "Instrument"),
    ),
}

TRUE_WORDS: Dict[Locale, str] = {
    Locale.SWEDISH: "Ja",
    Locale.ENGLISH: "Yes",
}


class MapperStateError(RuntimeError):
    """Raised when a TransactionMapper is used out of order."""


@dataclass(frozen=True)
class ColumnAssignment:
    field: str
    kind: FieldKind


# One entry per header column; None marks an unmapped column.
ColumnAssignments = Tuple[Optional[ColumnAssignment], ...]


# ---------------------------
# Field tokenizer
# ---------------------------
def split_line(text: str, nof_columns: int) -> List[Optional[str]]:
    """Split one export line into exactly ``nof_columns`` slots.

    A field is terminated by ``;``. A field starting with ``"`` runs until a
    ``;`` that directly follows a ``"``, so quoted content may contain
    semicolons; doubled quotes inside are kept as they are and only the
    enclosing quotes are stripped. Unquoted, non-blank text after the last
    delimiter counts as a final field. A quoted field needs its closing ``";``,
    so a quoted last field without a trailing ``;`` is treated as an
    unterminated quote: ``split_line('a;"x;y"', 2)`` gives ``["a", None]``.
    Slots for fields that could not be found (missing fields or an
    unterminated quote) stay None.
    """
    tokens: List[Optional[str]] = [None] * nof_columns
    index = 0
    start = 0
    field_start = 0
    found = True

    while found and index < nof_columns:
        field_start = start
        end = text.find(DELIMITER, start)
        found = end != -1
        extra_for_quote = 0

        if found and text[start] == QUOTE:
            start += 1
            # `";"` is a quoted semicolon, not an empty quoted field.
            if start == end:
                end = text.find(DELIMITER, end + 1)
                found = end != -1
            while found and text[end - 1] != QUOTE:
                end = text.find(DELIMITER, end + 1)
                found = end != -1
            extra_for_quote = 1
            end -= 1

        if found:
            tokens[index] = _clean_token(text[start:end])
            start = end + 1 + extra_for_quote
            index += 1

    if not found and index < nof_columns:
        rest = text[field_start:]
        if rest.strip() and not rest.startswith(QUOTE):
            tokens[index] = _clean_token(rest)

    return tokens


def _clean_token(token: str) -> str:
    return token.replace(AMPERSAND_ESCAPE, "&").strip()


def count_header_columns(header_cells: Sequence[Optional[str]]) -> int:
    """Number of leading header cells before the first missing one."""
    count = 0
    for cell in header_cells:
        if cell is None:
            break
        count += 1
    return count


# ---------------------------
# Schema mapping
# ---------------------------
def _header_lookup(
    locale: Locale, header_table: Dict[Locale, Tuple[Tuple[str, str], ...]]
) -> Dict[str, str]:
    lookup: Dict[str, str] = {}
    for field_name, header_text in header_table[locale]:
        lookup.setdefault(header_text, field_name)
    return lookup


def build_column_assignments(
    header_cells: Sequence[Optional[str]],
    locale: Locale,
    header_table: Dict[Locale, Tuple[Tuple[str, str], ...]] = HEADER_TABLE,
) -> ColumnAssignments:
    """Resolve every header cell to a record field for ``locale``.

    Matching is exact after trimming. Unknown headers, and repeated headers for
    a field that is already assigned, are left unmapped.
    """
    lookup = _header_lookup(locale, header_table)
    assigned: Set[str] = set()
    assignments: List[Optional[ColumnAssignment]] = []
    for cell in header_cells[: count_header_columns(header_cells)]:
        field_name = lookup.get(cell.strip())
        if field_name is None or field_name in assigned:
            assignments.append(None)
            continue
        assigned.add(field_name)
        assignments.append(ColumnAssignment(field_name, FIELD_KINDS[field_name]))
    return tuple(assignments)


def parse_bool(value: str, locale: Locale) -> bool:
    return value.strip().lower() == TRUE_WORDS[locale].lower()


def parse_number(value: str, locale: Locale, logger: Optional[logging.Logger] = None) -> float:
    """Parse a decimal written with either ',' or '.'; NaN (and a warning) on failure.

    Digit group underscores, which ``float`` would accept, count as a failure.
    """
    number = math.nan
    if "_" not in value:
        try:
            number = float(value.replace(",", "."))
        except ValueError:
            pass
    if not math.isfinite(number):
        (logger or LOGGER).warning(
            "Failed to parse number %r (locale=%s)", value, locale.value
        )
        return math.nan
    return number


def convert_value(
    assignment: ColumnAssignment,
    value: str,
    locale: Locale,
    logger: Optional[logging.Logger] = None,
) -> Any:
    kind = assignment.kind
    if kind is FieldKind.BOOL:
        return parse_bool(value, locale)
    if kind is FieldKind.NUMBER:
        return parse_number(value, locale, logger)
    if kind is FieldKind.TIMESTAMP:
        parsed = parse_timestamp(value)
        if parsed is None and value.strip():
            (logger or LOGGER).warning(
                "Failed to parse %s %r (locale=%s)", assignment.field, value, locale.value
            )
        return parsed
    return value


def convert_fields(
    assignments: ColumnAssignments,
    fields: Sequence[Optional[str]],
    locale: Locale,
    logger: Optional[logging.Logger] = None,
) -> Transaction:
    """Build one Transaction from a tokenized line. Pure apart from warnings."""
    values: Dict[str, Any] = {}
    for assignment, value in zip(assignments, fields):
        if assignment is None or value is None:
            continue
        values[assignment.field] = convert_value(assignment, value, locale, logger)
    return Transaction(**values)


class TransactionMapper:
    """Maps export columns to Transaction fields for one response.

    The mapper is created uninitialized; ``initialize`` reads the header once
    and the assignments are read-only afterwards, so ``create_transaction`` can
    be called from several threads.
    """

    def __init__(
        self,
        locale: Locale,
        header_table: Dict[Locale, Tuple[Tuple[str, str], ...]] = HEADER_TABLE,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.locale = locale
        self.header_table = header_table
        self.logger = logger or LOGGER
        self._assignments: Optional[ColumnAssignments] = None

    @property
    def initialized(self) -> bool:
        return self._assignments is not None

    @property
    def assignments(self) -> ColumnAssignments:
        if self._assignments is None:
            raise MapperStateError("TransactionMapper used before initialize()")
        return self._assignments

    @property
    def column_count(self) -> int:
        return len(self.assignments)

    def initialize(self, header_cells: Sequence[Optional[str]]) -> int:
        """Build the column assignments from the header; return the column count."""
        if self._assignments is not None:
            raise MapperStateError("TransactionMapper is already initialized")
        self._assignments = build_column_assignments(header_cells, self.locale, self.header_table)
        return len(self._assignments)

    def create_transaction(self, fields: Sequence[Optional[str]]) -> Transaction:
        return convert_fields(self.assignments, fields, self.locale, self.logger)

    def parse_line(self, line: str) -> Transaction:
        return self.create_transaction(split_line(line, self.column_count))


# ---------------------------
# Response stream
# ---------------------------
def _strip_line_end(line: str) -> str:
    return line.rstrip("\r\n")


def _parse_data_line(mapper: TransactionMapper, line: str) -> Transaction:
    return mapper.parse_line(_strip_line_end(line))


def _map_in_chunks(
    executor: Executor, convert: Callable[[str], Transaction], lines: Iterator[str]
) -> Iterator[Transaction]:
    # Executor.map submits its whole input up front.
    while True:
        chunk = list(islice(lines, EXECUTOR_CHUNK_SIZE))
        if not chunk:
            return
        yield from executor.map(convert, chunk)


def parse_transaction_lines(
    lines: Iterable[str],
    locale: Locale,
    executor: Optional[Executor] = None,
    logger: Optional[logging.Logger] = None,
    header_table: Dict[Locale, Tuple[Tuple[str, str], ...]] = HEADER_TABLE,
) -> Iterator[Transaction]:
    """Yield valid transactions from a header line followed by data lines.

    Lines are read lazily. When ``executor`` is given, they are submitted in
    chunks of ``EXECUTOR_CHUNK_SIZE`` so at most one chunk is read ahead of
    the caller; results keep input order either way.
    """
    iterator = iter(lines)
    header = next(iterator, None)
    if header is None:
        return
    header = _strip_line_end(header).lstrip(BOM)
    if not header.strip():
        return

    mapper = TransactionMapper(locale, header_table=header_table, logger=logger)
    if mapper.initialize(split_line(header, MAX_HEADER_COLUMNS)) == 0:
        return

    data_lines = (line for line in iterator if _strip_line_end(line))
    convert = partial(_parse_data_line, mapper)
    if executor is None:
        transactions: Iterable[Transaction] = map(convert, data_lines)
    else:
        transactions = _map_in_chunks(executor, convert, data_lines)

    for transaction in transactions:
        if is_valid(transaction):
            yield transaction
