"""HTTP client for the Swedish insider registry (Insynsregistret) at marknadssok.fi.se.

Builds export and autocomplete URLs, fetches them with requests and hands the
decoded export to ``insyn_parser``.

Example:
    client = InsynsregistretClient()
    query = TransactionQuery.publications_last_days(5, issuer="Hennes & Mauritz AB")
    for t in client.search_transactions(query):
        print(t.publication_date, t.issuer, t.pdmr, t.quantity, t.price)
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import date, timedelta
from typing import List, Optional
from urllib.parse import urlencode

import requests

from insyn_parser import AMPERSAND_ESCAPE, BOM, Locale, parse_transaction_lines
from insyn_transaction import Transaction

LOGGER = logging.getLogger("insynsregistret")

DEFAULT_BASE = "https://marknadssok.fi.se/Publiceringsklient"
SEARCH_PATH = "/Search/Search"
AUTOCOMPLETE_PATH = "/AutoComplete/H%C3%A4mtaAutoCompleteLista"
EXPORT_ENCODING = "utf-16-le"
AUTOCOMPLETE_ENCODING = "utf-8"
DEFAULT_TIMEOUT = 15.0

BROWSER_HEADERS = {
    "User-Agent": (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
        "AppleWebKit/537.36 (KHTML, like Gecko) "
        "Chrome/120.0.0.0 Safari/537.36"
    ),
    "Accept": "*/*",
    "Accept-Encoding": "gzip",
}


def _date_param(value: Optional[date]) -> str:
    return value.isoformat() if value else ""


def _check_range(from_date: Optional[date], to_date: Optional[date], what: str) -> None:
    if from_date is None:
        raise ValueError(f"From {what} date is missing")
    if to_date is None:
        raise ValueError(f"To {what} date is missing")
    if from_date > to_date:
        raise ValueError("From date after to date is not allowed")


def _check_days(days: int, what: str) -> None:
    if days < 0:
        raise ValueError(f"Past {what} days is a negative number")


@dataclass
class TransactionQuery:
    """Export query. Build it with one of the classmethods."""

    from_transaction_date: Optional[date] = None
    to_transaction_date: Optional[date] = None
    from_publication_date: Optional[date] = None
    to_publication_date: Optional[date] = None
    issuer: str = ""
    pdmr: str = ""
    locale: Locale = Locale.SWEDISH
    base_url: str = DEFAULT_BASE

    @classmethod
    def transactions(cls, from_date: date, to_date: date, issuer: str = "", pdmr: str = "",
                     locale: Locale = Locale.SWEDISH) -> "TransactionQuery":
        """Transactions that took place between two dates (inclusive)."""
        _check_range(from_date, to_date, "transaction")
        return cls(from_transaction_date=from_date, to_transaction_date=to_date,
                   issuer=issuer or "", pdmr=pdmr or "", locale=locale)

    @classmethod
    def transactions_last_days(cls, days: int, issuer: str = "", pdmr: str = "",
                               locale: Locale = Locale.SWEDISH,
                               today: Optional[date] = None) -> "TransactionQuery":
        _check_days(days, "transaction")
        to_date = today or date.today()
        return cls.transactions(to_date - timedelta(days=days), to_date, issuer, pdmr, locale)

    @classmethod
    def publications(cls, from_date: date, to_date: date, issuer: str = "", pdmr: str = "",
                     locale: Locale = Locale.SWEDISH) -> "TransactionQuery":
        """Transactions published between two dates; usually a few days after they took place."""
        _check_range(from_date, to_date, "publication")
        return cls(from_publication_date=from_date, to_publication_date=to_date,
                   issuer=issuer or "", pdmr=pdmr or "", locale=locale)

    @classmethod
    def publications_last_days(cls, days: int, issuer: str = "", pdmr: str = "",
                               locale: Locale = Locale.SWEDISH,
                               today: Optional[date] = None) -> "TransactionQuery":
        _check_days(days, "publication")
        to_date = today or date.today()
        return cls.publications(to_date - timedelta(days=days), to_date, issuer, pdmr, locale)

    @property
    def url(self) -> str:
        params = {
            "SearchFunctionType": "Insyn",
            "Utgivare": self.issuer,
            "PersonILedandeStällningNamn": self.pdmr,
            "Transaktionsdatum.From": _date_param(self.from_transaction_date),
            "Transaktionsdatum.To": _date_param(self.to_transaction_date),
            "Publiceringsdatum.From": _date_param(self.from_publication_date),
            "Publiceringsdatum.To": _date_param(self.to_publication_date),
            "button": "export",
        }
        base = self.base_url.rstrip("/")
        return f"{base}/{self.locale.url_name}{SEARCH_PATH}?{urlencode(params)}"


@dataclass
class FreeTextQuery:
    """Autocomplete lookup of issuer names or PDMR names."""

    field: str
    text: str
    base_url: str = DEFAULT_BASE

    @classmethod
    def issuer(cls, text: Optional[str]) -> "FreeTextQuery":
        if text is None:
            raise ValueError("Issuer free text is missing")
        return cls(field="Utgivare", text=text)

    @classmethod
    def pdmr(cls, text: Optional[str]) -> "FreeTextQuery":
        if text is None:
            raise ValueError("PDMR free text is missing")
        return cls(field="PersonILedandeStällningNamn", text=text)

    @property
    def url(self) -> str:
        base = self.base_url.rstrip("/")
        params = urlencode({"sokfunktion": "Insyn", "falt": self.field, "sokterm": self.text})
        return f"{base}/{Locale.SWEDISH.url_name}{AUTOCOMPLETE_PATH}?{params}"


def split_autocomplete_line(text: str) -> List[str]:
    """Extract the quoted names from one autocomplete response line, e.g. '["A","B"]'."""
    if len(text) <= 2:
        return []
    tokens: List[str] = []
    end = 0
    while True:
        start = text.find('"', end + 1)
        if start == -1:
            break
        end = text.find('"', start + 1)
        if end == -1:
            break
        tokens.append(text[start + 1 : end].replace(AMPERSAND_ESCAPE, "&").strip())
    return tokens


def decode_export(payload: bytes, encoding: str = EXPORT_ENCODING) -> str:
    """Decode an export body; the registry sometimes prefixes a byte order mark."""
    return payload.decode(encoding, errors="replace").lstrip(BOM)


def export_lines(text: str) -> List[str]:
    # Records end with "\n" only; free-text fields may hold other line breaks.
    return text.split("\n")


class InsynsregistretClient:
    def __init__(self, session: Optional[requests.Session] = None, timeout: float = DEFAULT_TIMEOUT,
                 parallel: bool = False, max_workers: Optional[int] = None) -> None:
        self.s = session or requests.Session()
        self.s.headers.update(BROWSER_HEADERS)
        self.timeout = timeout
        self.parallel = parallel
        self.max_workers = max_workers

    def send_request(self, url: str) -> requests.Response:
        LOGGER.debug("GET %s", url)
        r = self.s.get(url, timeout=self.timeout)
        r.raise_for_status()
        return r

    def fetch_export_lines(self, url: str) -> List[str]:
        r = self.send_request(url)
        return export_lines(decode_export(r.content))

    def search_transactions(self, query: TransactionQuery) -> List[Transaction]:
        lines = self.fetch_export_lines(query.url)
        if not self.parallel:
            return list(parse_transaction_lines(lines, query.locale))
        with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
            return list(parse_transaction_lines(lines, query.locale, executor=executor))

    def search_free_text(self, query: FreeTextQuery) -> List[str]:
        """Names suggested by the registry, without duplicates, in response order."""
        r = self.send_request(query.url)
        text = r.content.decode(AUTOCOMPLETE_ENCODING, errors="replace")
        seen = set()
        names: List[str] = []
        for line in text.splitlines():
            for name in split_autocomplete_line(line):
                if name not in seen:
                    seen.add(name)
                    names.append(name)
        return names
