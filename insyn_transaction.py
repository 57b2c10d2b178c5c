"""Insider transaction record as published by the Swedish insider registry (Insynsregistret).

A ``Transaction`` is produced once per data line of a registry export and is
immutable afterwards. Quantity and price default to NaN so that a record whose
numeric columns are missing or unparseable fails ``is_valid`` and is dropped by
the parser.
"""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass, fields
from datetime import datetime
from enum import Enum
from typing import Dict, Optional, Tuple

TIMESTAMP_FORMATS = (
    "%Y-%m-%d %H:%M:%S",
    "%d/%m/%Y %H:%M:%S",
    "%Y-%m-%dT%H:%M:%S",
)


def parse_timestamp(value: str) -> Optional[datetime]:
    """Parse the registry's timestamp formats; return None when nothing matches."""
    value = (value or "").strip()
    if not value:
        return None
    for fmt in TIMESTAMP_FORMATS:
        try:
            return datetime.strptime(value, fmt)
        except ValueError:
            continue
    return None


class InstrumentType(Enum):
    """Instrument type codes used by the registry, with English and Swedish labels."""

    SHARE = ("InstrumentTyp1", "Share", "Aktie")
    BTA = ("InstrumentTyp2", "BTA", "BTA (betald tecknad aktie)")
    BTU = ("InstrumentTyp3", "BTU", "BTU (betald tecknad unit)")
    CAPITAL_EQUITY = ("InstrumentTyp5", "Capital equity", "Kapitalandelsbevis")
    CONVERTIBLE = ("InstrumentTyp6", "Convertible", "Konvertibel")
    BOND = ("InstrumentTyp7", "Bond", "Obligation")
    OPTION = ("InstrumentTyp8", "Option", "Option")
    SUBSCRIPTION_WARRANT = ("InstrumentTyp11", "Subscription warrant", "Teckningsoption")
    SUBSCRIPTION_RIGHT = ("InstrumentTyp12", "Subscription right", "Teckningsrätt")
    FUTURE_FORWARD = ("InstrumentTyp13", "Future/Forward", "Terminer")
    WARRANT = ("InstrumentTyp14", "Warrant", "Warrant")
    OTHER_DERIVATIVE_CONTRACTS = ("InstrumentTyp15", "Other derivative contracts", "Övriga derivatkontrakt")
    REDEMPTION_SHARE = ("InstrumentTyp17", "Redemption share", "Inlösenaktie")
    CALL_OPTION = ("InstrumentTyp18", "Call option", "Köpoption")
    PUT_OPTION = ("InstrumentTyp19", "Put option", "Säljoption")
    SYNTHETIC_OPTION = ("InstrumentTyp20", "Synthetic option", "Syntetisk option")
    COMMERCIAL_PAPER = ("InstrumentTyp21", "Commercial paper", "Företagscertifikat")
    INTERIM_SHARE = ("InstrumentTyp22", "Interim share", "Interimsaktie")
    EMISSION_ALLOWANCE = ("InstrumentTyp23", "Emission allowance", "Utsläppsrätt")
    UNKNOWN = ("", "Unknown", "Okänd")

    @property
    def code(self) -> str:
        return self.value[0]

    @property
    def english_description(self) -> str:
        return self.value[1]

    @property
    def swedish_description(self) -> str:
        return self.value[2]

    @classmethod
    def parse(cls, text: Optional[str]) -> "InstrumentType":
        """Resolve a registry code or an English/Swedish label to a member."""
        if not text:
            return cls.UNKNOWN
        return _INSTRUMENT_TYPE_LOOKUP.get(text.strip(), cls.UNKNOWN)


def _build_instrument_type_lookup() -> Dict[str, InstrumentType]:
    lookup: Dict[str, InstrumentType] = {}
    for member in InstrumentType:
        if member is InstrumentType.UNKNOWN:
            continue
        for label in member.value:
            lookup[label] = member
    # Labels the registry uses that differ from the descriptions above.
    lookup["Teckningsrätt/Uniträtt"] = InstrumentType.SUBSCRIPTION_RIGHT
    return lookup


_INSTRUMENT_TYPE_LOOKUP = _build_instrument_type_lookup()


@dataclass(frozen=True)
class Transaction:
    publication_date: Optional[datetime] = None
    issuer: str = ""
    lei_code: str = ""
    notifier: str = ""
    pdmr: str = ""
    position: str = ""
    is_closely_associated: bool = False
    is_amendment: bool = False
    details_of_amendment: str = ""
    is_initial_notification: bool = False
    is_linked_to_share_option_programme: bool = False
    nature_of_transaction: str = ""
    instrument_type: str = ""
    instrument_name: str = ""
    isin: str = ""
    transaction_date: Optional[datetime] = None
    quantity: float = math.nan
    unit: str = ""
    price: float = math.nan
    currency: str = ""
    trading_venue: str = ""
    status: str = ""

    @property
    def instrument_type_description(self) -> InstrumentType:
        return InstrumentType.parse(self.instrument_type)

    def to_row(self) -> Dict[str, str]:
        """Flatten to CSV-ready strings."""
        row: Dict[str, str] = {}
        for key, value in asdict(self).items():
            if isinstance(value, datetime):
                row[key] = value.isoformat(sep=" ")
            elif value is None:
                row[key] = ""
            elif isinstance(value, bool):
                row[key] = "true" if value else "false"
            elif isinstance(value, float):
                row[key] = _format_number(value)
            else:
                row[key] = value
        row["instrument_type_description"] = self.instrument_type_description.english_description
        return row


FIELDNAMES = [f.name for f in fields(Transaction)] + ["instrument_type_description"]


def _format_number(value: float) -> str:
    if math.isnan(value):
        return ""
    if value.is_integer():
        return str(int(value))
    return str(value)


def is_valid(transaction: Transaction) -> bool:
    """A record is kept only when both quantity and price are real numbers."""
    return math.isfinite(transaction.quantity) and math.isfinite(transaction.price)


def transaction_sort_key(transaction: Transaction) -> Tuple[bool, datetime]:
    """Order by transaction date; records without one sort last."""
    date = transaction.transaction_date
    return (date is None, date or datetime.min)
