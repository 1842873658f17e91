from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter

from bankagg.core.enums import WebhookEventCategory


class _WebhookEventBase(BaseModel):
    provider: str
    provider_event_type: str
    external_user_ref: str | None = None
    occurred_at: datetime | None = None
    # Full provider envelope, kept for debugging only.
    raw: dict[str, Any] = Field(default_factory=dict, repr=False)


class AccountConnectedEvent(_WebhookEventBase):
    category: Literal[WebhookEventCategory.ACCOUNT_CONNECTED] = WebhookEventCategory.ACCOUNT_CONNECTED
    item_id: str | None = None


class AccountUpdatedEvent(_WebhookEventBase):
    category: Literal[WebhookEventCategory.ACCOUNT_UPDATED] = WebhookEventCategory.ACCOUNT_UPDATED
    item_id: str | None = None
    account_ids: list[str] = Field(default_factory=list)
    full_refresh: bool = False
    has_transaction_changes: bool = True


class TransactionsUpdatedEvent(_WebhookEventBase):
    category: Literal[WebhookEventCategory.TRANSACTIONS_UPDATED] = WebhookEventCategory.TRANSACTIONS_UPDATED
    account_ids: list[str] = Field(default_factory=list)


class AccountDisconnectedEvent(_WebhookEventBase):
    category: Literal[WebhookEventCategory.ACCOUNT_DISCONNECTED] = WebhookEventCategory.ACCOUNT_DISCONNECTED
    account_ids: list[str] = Field(default_factory=list)


class ConnectionRevokedEvent(_WebhookEventBase):
    category: Literal[WebhookEventCategory.CONNECTION_REVOKED] = WebhookEventCategory.CONNECTION_REVOKED
    item_id: str | None = None


class TestEvent(_WebhookEventBase):
    __test__ = False

    category: Literal[WebhookEventCategory.TEST] = WebhookEventCategory.TEST


class UnknownEvent(_WebhookEventBase):
    category: Literal[WebhookEventCategory.UNKNOWN] = WebhookEventCategory.UNKNOWN


WebhookEvent = Annotated[
    Union[
        AccountConnectedEvent,
        AccountUpdatedEvent,
        TransactionsUpdatedEvent,
        AccountDisconnectedEvent,
        ConnectionRevokedEvent,
        TestEvent,
        UnknownEvent,
    ],
    Field(discriminator="category"),
]

webhook_event_adapter: TypeAdapter[WebhookEvent] = TypeAdapter(WebhookEvent)


class WebhookAckOut(BaseModel):
    received: bool = True
    status: str
    event_id: str | None = None
    category: WebhookEventCategory | None = None
