from __future__ import annotations

import hashlib
import json
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from enum import Enum
from typing import Any
from uuid import UUID

from bankagg.core.enums import AccountType, TransactionDirection


# Ordered: the first matching keyword group wins.
_ACCOUNT_TYPE_KEYWORDS: tuple[tuple[AccountType, tuple[str, ...]], ...] = (
    (AccountType.SAVINGS, ("saving", "svgs", "épargne", "epargne", "livret", "deposit")),
    (AccountType.LOAN, ("loan", "prêt", "pret", "mortgage", "crédit immobilier")),
    (AccountType.CREDIT, ("credit", "crédit", "carte", "card")),
    (AccountType.INVESTMENT, ("invest", "brokerage", "securities", "pea", "life_insurance", "assurance vie", "market")),
    (AccountType.CHECKING, ("checking", "current", "courant", "cacc", "giro")),
)


def to_decimal(value: Any) -> Decimal | None:
    if value is None:
        return None
    if isinstance(value, Decimal):
        return value
    s = str(value).strip()
    if not s:
        return None
    try:
        return Decimal(s)
    except InvalidOperation:
        return None


def amount_to_cents(amount: Decimal | str | int | float) -> int:
    """
    Provider amounts are typically strings like "-12.34".
    """
    cents = (Decimal(str(amount)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    return int(cents)


def cents_to_amount(cents: int) -> Decimal:
    return (Decimal(cents) / 100).quantize(Decimal("0.01"))


def split_signed_amount(signed: Decimal | str | int | float) -> tuple[Decimal, TransactionDirection]:
    """
    `-42.50` -> (42.50, debit); zero and positive amounts are credits.
    """
    value = Decimal(str(signed))
    direction = TransactionDirection.CREDIT if value >= 0 else TransactionDirection.DEBIT
    return abs(value), direction


def parse_iso_date(value: Any) -> date | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    s = str(value).strip()
    if not s:
        return None
    try:
        return date.fromisoformat(s[:10])
    except ValueError:
        return None


def parse_iso_datetime(value: Any) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value
    s = str(value).strip()
    if not s:
        return None
    try:
        return datetime.fromisoformat(s.replace("Z", "+00:00"))
    except ValueError:
        return None


def first_text(raw: dict[str, Any], keys: tuple[str, ...]) -> str | None:
    for k in keys:
        v = raw.get(k)
        if v is None:
            continue
        s = str(v).strip()
        if s:
            return s
    return None


def clamp(value: str | None, length: int) -> str | None:
    if value is None:
        return None
    return value[:length]


def map_account_type(value: Any, *, default: AccountType) -> AccountType:
    """
    Keyword heuristics over a provider product/type label.

    `default` is explicit per provider: GoCardless product names default to
    checking, Bridge's typed vocabulary defaults to other.
    """
    if value is None:
        return default
    label = str(value).strip().lower()
    if not label:
        return default
    for account_type, keywords in _ACCOUNT_TYPE_KEYWORDS:
        if any(k in label for k in keywords):
            return account_type
    return default


def stable_hash_id(payload: dict[str, Any], *, prefix: str = "hash_") -> str:
    h = hashlib.sha256(json.dumps(jsonable(payload), sort_keys=True, ensure_ascii=True).encode("utf-8")).hexdigest()
    return f"{prefix}{h[:32]}"


def jsonable(value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {str(k): jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [jsonable(v) for v in value]
    return str(value)
