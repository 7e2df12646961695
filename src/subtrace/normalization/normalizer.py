"""
Candidate normalizer.

Pure mapping from RawCandidate to Detection:
- service name: lower-cased, trimmed, whitespace-collapsed, alias-canonicalized
- category: alias table, then the Oracle's hint, then Other
- currency: candidate's currency (symbols mapped to ISO), else home currency
- amount: parsed when unambiguous, otherwise left empty (never guessed)
"""

import logging
import re
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from importlib import resources
from pathlib import Path
from typing import Any, Optional

import yaml

from ..schemas.detection import Category, Detection, RawCandidate

logger = logging.getLogger(__name__)

CURRENCY_SYMBOLS = {
    "₹": "INR",
    "$": "USD",
    "€": "EUR",
    "£": "GBP",
}
CURRENCY_WORDS = {
    "rs": "INR",
    "rs.": "INR",
    "inr": "INR",
    "rupees": "INR",
    "usd": "USD",
    "eur": "EUR",
    "gbp": "GBP",
}

_NUMBER = re.compile(r"-?\d[\d,]*(?:\.\d+)?")
_WHITESPACE = re.compile(r"\s+")


def normalize_service_name(raw: Optional[str]) -> str:
    """Lower-case, trim and collapse whitespace."""
    if not raw:
        return ""
    return _WHITESPACE.sub(" ", raw.strip().lower())


def _phrase_pattern(phrase: str) -> re.Pattern:
    return re.compile(r"(?<![a-z0-9])" + re.escape(phrase) + r"(?![a-z0-9])")


@dataclass(frozen=True)
class AliasEntry:
    """One canonical service."""

    name: str
    category: Category
    phrases: tuple[str, ...]


class AliasTable:
    """Data-driven service alias and category lookup.

    Loaded once from YAML; lookups are pure.
    """

    def __init__(
        self,
        entries: list[AliasEntry],
        keywords: Optional[dict[str, Category]] = None,
    ) -> None:
        self.entries = entries
        self._phrases: list[tuple[re.Pattern, int, AliasEntry]] = []
        for entry in entries:
            for phrase in entry.phrases:
                self._phrases.append((_phrase_pattern(phrase), len(phrase), entry))
        self._keywords = [
            (_phrase_pattern(word), len(word), category)
            for word, category in (keywords or {}).items()
        ]

    @classmethod
    def from_dict(cls, data: dict) -> "AliasTable":
        """Build from the parsed YAML mapping.

        Raises:
            ValueError: On unknown categories or entries without phrases
        """
        entries = []
        for item in data.get("services") or []:
            name = normalize_service_name(item.get("name"))
            category = Category.parse(item.get("category"))
            if not name or category is None:
                raise ValueError(f"Invalid alias entry: {item!r}")
            phrases = tuple(
                normalize_service_name(p) for p in (item.get("match") or [name]) if p
            )
            if not phrases:
                raise ValueError(f"Alias entry {name!r} has no match phrases")
            entries.append(AliasEntry(name=name, category=category, phrases=phrases))

        keywords: dict[str, Category] = {}
        for category_name, words in (data.get("keywords") or {}).items():
            category = Category.parse(category_name)
            if category is None:
                raise ValueError(f"Unknown keyword category: {category_name!r}")
            for word in words or []:
                keywords[normalize_service_name(word)] = category

        return cls(entries, keywords)

    @classmethod
    def load(cls, path: Optional[Path] = None) -> "AliasTable":
        """Load from a YAML file, or the packaged table when path is None."""
        if path is None:
            text = (
                resources.files("subtrace.normalization")
                .joinpath("aliases.yaml")
                .read_text(encoding="utf-8")
            )
        else:
            text = Path(path).read_text(encoding="utf-8")
        table = cls.from_dict(yaml.safe_load(text) or {})
        logger.debug("Loaded alias table with %d services", len(table.entries))
        return table

    def lookup(self, normalized_name: str) -> Optional[AliasEntry]:
        """Canonical service for a normalized name; longest matching phrase wins."""
        best: Optional[tuple[int, AliasEntry]] = None
        for pattern, length, entry in self._phrases:
            if (best is None or length > best[0]) and pattern.search(normalized_name):
                best = (length, entry)
        return best[1] if best else None

    def keyword_category(self, normalized_name: str) -> Optional[Category]:
        best: Optional[tuple[int, Category]] = None
        for pattern, length, category in self._keywords:
            if (best is None or length > best[0]) and pattern.search(normalized_name):
                best = (length, category)
        return best[1] if best else None


def parse_amount(value: Any) -> Optional[Decimal]:
    """Parse an amount; None when unparseable or negative.

    Accepts Decimal, int, float and text such as "₹1,234.56" or "INR 650".
    """
    if value is None or isinstance(value, bool):
        return None

    if isinstance(value, (Decimal, int, float)):
        try:
            amount = Decimal(str(value))
        except InvalidOperation:
            return None
    else:
        text = str(value).strip()
        matches = _NUMBER.findall(text)
        if len(matches) != 1:
            return None
        try:
            amount = Decimal(matches[0].replace(",", ""))
        except InvalidOperation:
            return None

    if not amount.is_finite() or amount < 0:
        return None
    return amount


def detect_currency(value: Any) -> Optional[str]:
    """ISO code from a code, symbol or amount text; None if not recognizable."""
    if value is None:
        return None
    text = str(value).strip()
    if not text:
        return None
    for symbol, code in CURRENCY_SYMBOLS.items():
        if symbol in text:
            return code
    lowered = text.lower()
    if lowered in CURRENCY_WORDS:
        return CURRENCY_WORDS[lowered]
    if len(text) == 3 and text.isalpha():
        return text.upper()
    for token in re.split(r"[\s\d.,/]+", lowered):
        if token in CURRENCY_WORDS:
            return CURRENCY_WORDS[token]
    return None


class CandidateNormalizer:
    """Turn raw candidates from either source into Detections."""

    def __init__(self, alias_table: Optional[AliasTable] = None, home_currency: str = "INR"):
        self.alias_table = alias_table or AliasTable.load()
        self.home_currency = home_currency.upper()

    def resolve_name(self, raw_name: Optional[str]) -> tuple[str, Optional[AliasEntry]]:
        name = normalize_service_name(raw_name)
        if not name:
            return "", None
        entry = self.alias_table.lookup(name)
        return (entry.name if entry else name), entry

    def resolve_category(
        self, normalized_name: str, entry: Optional[AliasEntry], hint: Optional[str]
    ) -> Category:
        if entry is not None:
            return entry.category
        keyword = self.alias_table.keyword_category(normalized_name)
        if keyword is not None:
            return keyword
        return Category.parse(hint) or Category.OTHER

    def normalize(self, candidate: RawCandidate) -> Detection:
        """Normalize one candidate. No I/O."""
        name, entry = self.resolve_name(candidate.raw_service_name)
        amount = parse_amount(candidate.amount)
        if amount is None and candidate.amount not in (None, ""):
            logger.debug(
                "Unusable amount %r for %s; leaving it empty", candidate.amount, name
            )

        currency = (
            detect_currency(candidate.currency)
            or (detect_currency(candidate.amount) if isinstance(candidate.amount, str) else None)
            or self.home_currency
        )

        return Detection(
            source=candidate.source,
            source_ref=candidate.source_ref,
            raw_service_name=candidate.raw_service_name,
            normalized_service_name=name,
            amount=amount,
            currency=currency,
            billing_cycle=candidate.billing_cycle,
            category=self.resolve_category(name, entry, candidate.category_hint),
            confidence=candidate.confidence,
            evidence_count=candidate.evidence_count,
            evidence_refs=list(candidate.evidence_refs),
            is_confirmation_email=candidate.is_confirmation_email,
            email_type=candidate.email_type,
            last_seen=candidate.last_seen,
            next_billing_date=candidate.next_billing_date,
            description=candidate.description,
        )

    def normalize_all(self, candidates: list[RawCandidate]) -> list[Detection]:
        return [self.normalize(c) for c in candidates]
