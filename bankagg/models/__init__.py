from bankagg.models.api_metric import ApiMetric
from bankagg.models.bank_account import BankAccount
from bankagg.models.bank_connection import BankConnection
from bankagg.models.bank_transaction import BankTransaction
from bankagg.models.job_lock import JobLock
from bankagg.models.webhook_event import ProcessedWebhookEvent

__all__ = [
    "ApiMetric",
    "BankAccount",
    "BankConnection",
    "BankTransaction",
    "JobLock",
    "ProcessedWebhookEvent",
]
