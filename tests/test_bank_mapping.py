from __future__ import annotations

from datetime import date
from decimal import Decimal

import pytest

from bankagg.core.enums import AccountType, TransactionDirection, TransactionStatus
from bankagg.models.bank_account import BankAccount
from bankagg.models.bank_transaction import BankTransaction
from bankagg.services.bank_mapping import (
    amount_to_cents,
    cents_to_amount,
    map_account_type,
    parse_iso_date,
    split_signed_amount,
)
from bankagg.services.bank_providers.base import ProviderConfig
from bankagg.services.bank_providers.bridge import BridgeProvider, map_bridge_category
from bankagg.services.bank_providers.gocardless import GoCardlessProvider


def _gocardless() -> GoCardlessProvider:
    return GoCardlessProvider(ProviderConfig(name="gocardless", secret_id="id", secret_key="key"))


def _bridge() -> BridgeProvider:
    return BridgeProvider(ProviderConfig(name="bridge", client_id="cid", client_secret="csecret"))


def test_signed_amount_splits_into_magnitude_and_direction() -> None:
    assert split_signed_amount("-42.50") == (Decimal("42.50"), TransactionDirection.DEBIT)
    assert split_signed_amount("42.50") == (Decimal("42.50"), TransactionDirection.CREDIT)
    assert split_signed_amount(0) == (Decimal("0"), TransactionDirection.CREDIT)


def test_cents_conversions_round_half_up() -> None:
    assert amount_to_cents("12.345") == 1235
    assert amount_to_cents(Decimal("-0.01")) == -1
    assert cents_to_amount(150) == Decimal("1.50")
    assert cents_to_amount(250000) == Decimal("2500.00")


def test_parse_iso_date_accepts_datetimes_and_rejects_garbage() -> None:
    assert parse_iso_date("2026-03-04T10:00:00Z") == date(2026, 3, 4)
    assert parse_iso_date("") is None
    assert parse_iso_date("not-a-date") is None


@pytest.mark.parametrize(
    ("label", "default", "expected"),
    [
        ("Livret A", AccountType.CHECKING, AccountType.SAVINGS),
        ("Compte courant", AccountType.OTHER, AccountType.CHECKING),
        ("Carte Visa", AccountType.CHECKING, AccountType.CREDIT),
        ("Prêt immobilier", AccountType.CHECKING, AccountType.LOAN),
        ("Brokerage", AccountType.CHECKING, AccountType.INVESTMENT),
        ("Something else", AccountType.CHECKING, AccountType.CHECKING),
        ("Something else", AccountType.OTHER, AccountType.OTHER),
        (None, AccountType.OTHER, AccountType.OTHER),
    ],
)
def test_account_type_keywords(label, default, expected) -> None:
    assert map_account_type(label, default=default) == expected


def test_gocardless_transaction_mapping_uses_remittance_then_counterparty() -> None:
    provider = _gocardless()
    tx = provider.map_to_standard_format(
        {
            "transactionId": "t-1",
            "bookingDate": "2026-01-02",
            "valueDate": "2026-01-03",
            "transactionAmount": {"amount": "-42.50", "currency": "EUR"},
            "creditorName": "ACME GmbH",
        },
        "transaction",
        account_id="acc-1",
    )
    assert tx.external_id == "t-1"
    assert tx.account_external_id == "acc-1"
    assert tx.amount == Decimal("42.50")
    assert tx.direction == TransactionDirection.DEBIT
    assert tx.description == "ACME GmbH"
    assert tx.counterparty_name == "ACME GmbH"
    assert tx.booked_date == date(2026, 1, 2)
    assert tx.value_date == date(2026, 1, 3)
    assert tx.status == TransactionStatus.COMPLETED

    with_remittance = provider.map_to_standard_format(
        {
            "transactionId": "t-2",
            "bookingDate": "2026-01-02",
            "transactionAmount": {"amount": "10", "currency": "EUR"},
            "remittanceInformationUnstructuredArray": ["Invoice 17", " ", "March"],
            "debtorName": "Client SA",
        },
        "transaction",
        account_id="acc-1",
    )
    assert with_remittance.description == "Invoice 17 | March"
    assert with_remittance.direction == TransactionDirection.CREDIT


def test_gocardless_transaction_without_ids_gets_stable_hash_id() -> None:
    provider = _gocardless()
    raw = {"bookingDate": "2026-01-02", "transactionAmount": {"amount": "-5.00", "currency": "EUR"}, "creditorName": "Bakery"}
    first = provider.map_to_standard_format(dict(raw), "transaction", account_id="acc-1")
    second = provider.map_to_standard_format(dict(raw), "transaction", account_id="acc-1")
    assert first.external_id.startswith("hash_")
    assert first.external_id == second.external_id


def test_gocardless_transaction_without_currency_is_skipped() -> None:
    provider = _gocardless()
    assert provider.map_to_standard_format({"transactionAmount": {"amount": "1.00"}}, "transaction") is None


def test_gocardless_account_prefers_expected_balance_and_defaults_to_checking() -> None:
    provider = _gocardless()
    account = provider.map_to_standard_format(
        {
            "id": "acc-1",
            "requisition_id": "req-1",
            "metadata": {"status": "READY", "institution_id": "BANK_X"},
            "account": {"iban": "DE89370400440532013000", "currency": "EUR"},
            "balances": [
                {"balanceType": "closingBooked", "balanceAmount": {"amount": "1.00", "currency": "EUR"}},
                {"balanceType": "expected", "balanceAmount": {"amount": "99.90", "currency": "EUR"}},
            ],
            "institution": {"id": "BANK_X", "name": "Bank X"},
        },
        "account",
    )
    assert account.name == "Account 3000"
    assert account.account_type == AccountType.CHECKING
    assert account.balance == Decimal("99.90")
    assert account.item_id == "req-1"
    assert account.institution_name == "Bank X"


def test_bridge_mapping_types_categories_and_statuses() -> None:
    provider = _bridge()
    account = provider.map_to_standard_format(
        {"id": 77, "name": "Livret", "type": "savings", "balance": 12.5, "currency_code": "EUR", "provider_id": 9},
        "account",
        institution={"name": "Banque Y", "images": {"logo": "https://logo"}},
    )
    assert account.external_id == "77"
    assert account.account_type == AccountType.SAVINGS
    assert account.institution_name == "Banque Y"
    assert account.institution_logo == "https://logo"

    odd = provider.map_to_standard_format({"id": 78, "type": "mystery"}, "account")
    assert odd.account_type == AccountType.OTHER
    assert odd.institution_name == "Bank"

    tx = provider.map_to_standard_format(
        {"id": 1, "amount": -8.4, "currency_code": "EUR", "clean_description": "Lunch", "date": "2026-02-01", "category_id": 271},
        "transaction",
        account_id="77",
    )
    assert tx.direction == TransactionDirection.DEBIT
    assert tx.amount == Decimal("8.4")
    assert tx.category == "meals"
    assert tx.account_external_id == "77"

    assert provider.map_to_standard_format({"id": 2, "amount": 1, "deleted": True}, "transaction").status == TransactionStatus.CANCELLED
    assert provider.map_to_standard_format({"id": 3, "amount": 1, "future": True}, "transaction").status == TransactionStatus.PENDING
    assert map_bridge_category("nope") == "other"
    assert map_bridge_category(999) == "other"


def test_model_money_properties_keep_two_decimal_places() -> None:
    tx = BankTransaction(amount_cents=15000, fee_amount_cents=0)
    account = BankAccount(balance_cents=250000)

    assert str(tx.amount) == "150.00"
    assert str(tx.fee_amount) == "0.00"
    assert str(account.balance) == "2500.00"
