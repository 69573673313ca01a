"""
Payment proof verification scoring.

This module scores an uploaded payment proof against what the order expects
to have been paid. Signal extraction is a pluggable strategy; the default
TextSignalExtractor reads receipt text with regular expressions. Scoring
weighs amount, currency, payment date, recipient and bank markers into a
confidence in [0, 1].

The scorer is fail-safe: anything that prevents a confident reading
(undecodable payload, missing amount, extractor error, time budget exceeded)
yields a zero score routed to manual review, never an approval.
"""

import asyncio
import re
import unicodedata
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Optional, Protocol

from orderflow.core.exceptions import OrderflowError
from orderflow.core.logging import get_logger, log_performance

logger = get_logger(__name__)

AMOUNT_TOLERANCE = Decimal("0.01")

WEIGHT_AMOUNT = 40
WEIGHT_CURRENCY = 20
WEIGHT_DATE = 20
WEIGHT_RECIPIENT = 10
WEIGHT_BANK = 10

RECIPIENT_MATCH_SIMILARITY = 0.8
STALE_DATE_DAYS = 30
FUTURE_DATE_GRACE_DAYS = 1


class VerificationFailure(OrderflowError):
    """Raised by extractors when no usable signal can be read."""

    default_code = "verification_failure"


@dataclass
class ExtractedSignals:
    """Candidate payment facts read from a proof."""

    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    payment_date: Optional[date] = None
    payment_time: Optional[str] = None
    recipient: Optional[str] = None
    bank_name: Optional[str] = None
    transaction_id: Optional[str] = None
    mentions_order_number: bool = False


@dataclass(frozen=True)
class ExpectedPayment:
    """What the order says should have been paid."""

    amount: Decimal
    currency: str
    order_number: str
    recipient: Optional[str] = None


@dataclass
class VerificationResult:
    """Outcome of scoring one proof."""

    confidence_score: float
    is_auto_verifiable: bool
    detected_amount: Optional[Decimal] = None
    detected_currency: Optional[str] = None
    recipient_match: bool = False
    amount_exact: bool = False
    currency_match: bool = False
    failure_reason: Optional[str] = None
    breakdown: dict[str, float] = field(default_factory=dict)
    signals: Optional[ExtractedSignals] = None

    @classmethod
    def failed(cls, reason: str) -> "VerificationResult":
        return cls(confidence_score=0.0, is_auto_verifiable=False, failure_reason=reason)

    def to_dict(self) -> dict[str, Any]:
        """JSON-safe representation stored alongside the proof."""
        signals = None
        if self.signals is not None:
            signals = {
                key: (str(value) if isinstance(value, (Decimal, date)) else value)
                for key, value in asdict(self.signals).items()
            }
        return {
            "confidence_score": self.confidence_score,
            "is_auto_verifiable": self.is_auto_verifiable,
            "detected_amount": (
                str(self.detected_amount) if self.detected_amount is not None else None
            ),
            "detected_currency": self.detected_currency,
            "recipient_match": self.recipient_match,
            "amount_exact": self.amount_exact,
            "currency_match": self.currency_match,
            "failure_reason": self.failure_reason,
            "breakdown": dict(self.breakdown),
            "signals": signals,
        }


class SignalExtractor(Protocol):
    """Strategy that reads payment signals out of a proof payload."""

    def extract(self, payload: bytes, expected: ExpectedPayment) -> ExtractedSignals:
        ...


_AMOUNT_NUMBER = (
    r"(\d{1,3}(?:[ \u00a0]\d{3})+(?:[.,]\d{1,2})?(?!\d)"
    r"|\d{1,3}(?:[,.]\d{3})+(?:[.,]\d{1,2})?(?!\d)"
    r"|\d+(?:[.,]\d{1,2})?)"
)

_AMOUNT_PATTERNS = [
    re.compile(
        r"(?:amount|total|sum|paid|сумма|перевод|списано|зачислено)[:\s]*"
        r"(?:[$€₽£]\s*)?" + _AMOUNT_NUMBER,
        re.IGNORECASE,
    ),
    re.compile(_AMOUNT_NUMBER + r"\s*(?:руб|₽|rub|usd|eur|gbp|р\.|\$|€|£)", re.IGNORECASE),
    re.compile(r"[$€₽£]\s*" + _AMOUNT_NUMBER),
]

_CURRENCY_MARKERS = [
    ("RUB", re.compile(r"руб|₽|\brub\b|\bр\.", re.IGNORECASE)),
    ("USD", re.compile(r"\busd\b|\$", re.IGNORECASE)),
    ("EUR", re.compile(r"\beur\b|€", re.IGNORECASE)),
    ("GBP", re.compile(r"\bgbp\b|£", re.IGNORECASE)),
]

_MONTHS_RU = {
    "января": 1, "февраля": 2, "марта": 3, "апреля": 4, "мая": 5, "июня": 6,
    "июля": 7, "августа": 8, "сентября": 9, "октября": 10, "ноября": 11, "декабря": 12,
}

_DATE_ISO = re.compile(r"\b(\d{4})[./-](\d{2})[./-](\d{2})\b")
_DATE_DMY = re.compile(r"\b(\d{2})[./-](\d{2})[./-](\d{4})\b")
_DATE_RU = re.compile(
    r"\b(\d{1,2})\s+(" + "|".join(_MONTHS_RU) + r")\s+(\d{4})", re.IGNORECASE
)
_TIME = re.compile(r"\b(\d{1,2}:\d{2}(?::\d{2})?)\b")

_RECIPIENT_PATTERNS = [
    re.compile(r"(?:recipient|payee|beneficiary|получатель)[:\s]+([^\n\r]+)", re.IGNORECASE),
    re.compile(r"(?:на сч[её]т)[:\s]+([^\n\r]+)", re.IGNORECASE),
]

_TRANSACTION_ID = re.compile(
    r"(?:transaction|txn|operation|reference|операци[яи]|квитанци[яи])"
    r"\s*(?:id|no\.?|number|№|#)?[:\s#№]*([A-Za-z0-9-]{6,})",
    re.IGNORECASE,
)

_PDF_TEXT = re.compile(r"\(((?:\\.|[^\\)])*)\)\s*Tj")
_PDF_ESCAPE = re.compile(r"\\([()\\])")

BANK_MARKERS = (
    "сбербанк", "втб", "газпромбанк", "альфа-банк", "россельхозбанк",
    "тинькофф", "райффайзен", "открытие", "совкомбанк", "почта банк",
    "sberbank", "tinkoff", "alfa-bank", "raiffeisen",
    "revolut", "wise", "monzo", "barclays", "hsbc", "chase", "paypal",
)


def _parse_amount(raw: str) -> Optional[Decimal]:
    """
    Parse an amount with optional digit grouping.

    The last separator is the decimal mark unless it is followed by exactly
    three digits and no other kind of separator appears, as in "1,234" or
    "1.234.567".
    """
    cleaned = raw.replace("\u00a0", "").replace(" ", "")
    marks = [ch for ch in cleaned if ch in ",."]
    if marks:
        head, mark, tail = cleaned.rpartition(marks[-1])
        if len(tail) == 3 and len(set(marks)) == 1:
            cleaned = cleaned.replace(mark, "")
        else:
            cleaned = head.replace(",", "").replace(".", "") + "." + tail
    try:
        amount = Decimal(cleaned)
    except InvalidOperation:
        return None
    return amount if amount > 0 else None


def _parse_date(text: str) -> Optional[date]:
    match = _DATE_ISO.search(text)
    if match:
        year, month, day = (int(g) for g in match.groups())
        try:
            return date(year, month, day)
        except ValueError:
            pass

    match = _DATE_DMY.search(text)
    if match:
        day, month, year = (int(g) for g in match.groups())
        try:
            return date(year, month, day)
        except ValueError:
            pass

    match = _DATE_RU.search(text)
    if match:
        day, month_name, year = match.groups()
        try:
            return date(int(year), _MONTHS_RU[month_name.lower()], int(day))
        except ValueError:
            pass

    return None


class TextSignalExtractor:
    """
    Extract signals from a text receipt (bank SMS, statement export, OCR text).

    Binary payloads such as raw images are not decodable as text and are
    reported as a VerificationFailure.
    """

    min_printable_ratio = 0.9

    def decode(self, payload: bytes) -> str:
        if not payload:
            raise VerificationFailure("Empty payload")
        if payload.startswith(b"%PDF"):
            return self._decode_pdf(payload)
        try:
            text = payload.decode("utf-8")
        except UnicodeDecodeError as e:
            raise VerificationFailure("Payload is not decodable text") from e

        printable = sum(
            1 for ch in text
            if ch in "\n\r\t" or not unicodedata.category(ch).startswith("C")
        )
        if printable / len(text) < self.min_printable_ratio:
            raise VerificationFailure("Payload is not readable text")
        return text

    def _decode_pdf(self, payload: bytes) -> str:
        # Only uncompressed text-showing operators are readable here
        raw = payload.decode("latin-1")
        strings = _PDF_TEXT.findall(raw)
        if not strings:
            raise VerificationFailure("PDF carries no extractable text")
        return "\n".join(_PDF_ESCAPE.sub(lambda m: m.group(1), s) for s in strings)

    def extract(self, payload: bytes, expected: ExpectedPayment) -> ExtractedSignals:
        text = self.decode(payload)
        signals = ExtractedSignals()

        for pattern in _AMOUNT_PATTERNS:
            match = pattern.search(text)
            if match:
                amount = _parse_amount(match.group(1))
                if amount is not None:
                    signals.amount = amount
                    break

        for code, pattern in _CURRENCY_MARKERS:
            if pattern.search(text):
                signals.currency = code
                break
        if signals.currency is None and re.search(
            rf"\b{re.escape(expected.currency.upper())}\b", text
        ):
            signals.currency = expected.currency.upper()

        signals.payment_date = _parse_date(text)

        time_match = _TIME.search(text)
        if time_match:
            signals.payment_time = time_match.group(1)

        for pattern in _RECIPIENT_PATTERNS:
            match = pattern.search(text)
            if match:
                signals.recipient = match.group(1).strip()
                break

        lowered = text.lower()
        for bank in BANK_MARKERS:
            if bank in lowered:
                signals.bank_name = bank
                break

        tx_match = _TRANSACTION_ID.search(text)
        if tx_match:
            signals.transaction_id = tx_match.group(1)

        signals.mentions_order_number = expected.order_number in text

        if signals.amount is None:
            raise VerificationFailure("No payment amount found in proof")

        return signals


def levenshtein_distance(a: str, b: str) -> int:
    if len(a) < len(b):
        a, b = b, a
    previous = list(range(len(b) + 1))
    for i, ca in enumerate(a, start=1):
        current = [i]
        for j, cb in enumerate(b, start=1):
            current.append(
                min(
                    previous[j] + 1,
                    current[j - 1] + 1,
                    previous[j - 1] + (ca != cb),
                )
            )
        previous = current
    return previous[-1]


def string_similarity(a: str, b: str) -> float:
    """Normalized Levenshtein similarity in [0, 1]."""
    a, b = a.strip().lower(), b.strip().lower()
    longest = max(len(a), len(b))
    if longest == 0:
        return 1.0
    return (longest - levenshtein_distance(a, b)) / longest


def amount_score(detected: Optional[Decimal], expected: Decimal) -> int:
    """
    Amount points; never increases as the mismatch grows.

    Exact (within 0.01) scores full weight, within 5% and 10% score less.
    """
    if detected is None:
        return 0
    diff = abs(detected - expected)
    if diff <= AMOUNT_TOLERANCE:
        return WEIGHT_AMOUNT
    if diff <= expected * Decimal("0.05"):
        return 30
    if diff <= expected * Decimal("0.10"):
        return 20
    return 0


class VerificationScorer:
    """
    Derives a confidence score for a payment proof.

    Auto-verification requires the score to reach the threshold, the amount
    to match exactly and the currency to match.
    """

    def __init__(
        self,
        extractor: Optional[SignalExtractor] = None,
        threshold: float = 0.85,
        budget_seconds: float = 10.0,
        recency_days: int = 7,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.extractor = extractor or TextSignalExtractor()
        self.threshold = threshold
        self.budget_seconds = budget_seconds
        self.recency_days = recency_days
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def score(self, payload: bytes, expected: ExpectedPayment) -> VerificationResult:
        """
        Score a proof payload.

        Extraction runs in a worker thread under the time budget. Never
        raises for bad input; cancellation of the calling task propagates.

        Args:
            payload: Raw proof bytes
            expected: Expected amount, currency and order number

        Returns:
            VerificationResult, zero-scored with failure_reason on failure
        """
        try:
            async with log_performance(
                logger, "proof_scoring", order_number=expected.order_number
            ):
                signals = await asyncio.wait_for(
                    asyncio.to_thread(self.extractor.extract, payload, expected),
                    timeout=self.budget_seconds,
                )
        except VerificationFailure as e:
            logger.info(
                "Proof signals unavailable",
                order_number=expected.order_number,
                reason=e.message,
            )
            return VerificationResult.failed(e.message)
        except asyncio.TimeoutError:
            logger.warning(
                "Proof scoring exceeded budget",
                order_number=expected.order_number,
                budget_seconds=self.budget_seconds,
            )
            return VerificationResult.failed("Verification time budget exceeded")
        except Exception as e:
            logger.error(
                "Signal extractor failed",
                order_number=expected.order_number,
                error=str(e),
                error_type=type(e).__name__,
            )
            return VerificationResult.failed(f"Extractor error: {type(e).__name__}")

        return self.score_signals(signals, expected)

    def score_signals(
        self, signals: ExtractedSignals, expected: ExpectedPayment
    ) -> VerificationResult:
        """Combine extracted signals into a confidence score."""
        breakdown: dict[str, float] = {}
        max_score = WEIGHT_AMOUNT + WEIGHT_CURRENCY + WEIGHT_DATE + WEIGHT_BANK

        breakdown["amount"] = amount_score(signals.amount, expected.amount)
        amount_exact = breakdown["amount"] == WEIGHT_AMOUNT

        currency_match = (
            signals.currency is not None
            and signals.currency.upper() == expected.currency.upper()
        )
        breakdown["currency"] = WEIGHT_CURRENCY if currency_match else 0

        breakdown["date"] = self._date_score(signals.payment_date)

        recipient_match = False
        if expected.recipient:
            max_score += WEIGHT_RECIPIENT
            similarity = (
                string_similarity(signals.recipient, expected.recipient)
                if signals.recipient
                else 0.0
            )
            recipient_match = similarity >= RECIPIENT_MATCH_SIMILARITY
            breakdown["recipient"] = round(similarity * WEIGHT_RECIPIENT, 2)

        breakdown["bank"] = WEIGHT_BANK if signals.bank_name else 0

        confidence = round(sum(breakdown.values()) / max_score, 4)
        confidence = min(max(confidence, 0.0), 1.0)

        return VerificationResult(
            confidence_score=confidence,
            is_auto_verifiable=(
                confidence >= self.threshold and amount_exact and currency_match
            ),
            detected_amount=signals.amount,
            detected_currency=signals.currency,
            recipient_match=recipient_match,
            amount_exact=amount_exact,
            currency_match=currency_match,
            breakdown=breakdown,
            signals=signals,
        )

    def _date_score(self, payment_date: Optional[date]) -> int:
        if payment_date is None:
            return 0
        today = self._clock().date()
        if payment_date > today + timedelta(days=FUTURE_DATE_GRACE_DAYS):
            return 0
        age_days = (today - payment_date).days
        if age_days <= self.recency_days:
            return WEIGHT_DATE
        if age_days <= STALE_DATE_DAYS:
            return 10
        return 0
