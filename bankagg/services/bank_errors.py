from __future__ import annotations


class BankingError(Exception):
    """Base class for everything the banking layer raises on purpose."""

    code = "banking_error"
    status_code = 500

    def __init__(self, message: str, *, provider: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.provider = provider

    def to_dict(self) -> dict[str, str]:
        out = {"code": self.code, "message": self.message}
        if self.provider:
            out["provider"] = self.provider
        return out


class ConfigurationError(BankingError):
    code = "configuration_error"
    status_code = 503


class AuthenticationError(BankingError):
    code = "authentication_error"
    status_code = 502


class ProviderAPIError(BankingError):
    """
    Non-2xx answer from an aggregator.

    `detail` keeps the raw response text for logs; `message` is what users see.
    """

    code = "provider_api_error"
    status_code = 502

    def __init__(
        self,
        message: str,
        *,
        provider: str | None = None,
        upstream_status: int | None = None,
        detail: str | None = None,
    ) -> None:
        super().__init__(message, provider=provider)
        self.upstream_status = upstream_status
        self.detail = detail


class SignatureError(BankingError):
    code = "invalid_signature"
    status_code = 401


class NotFoundError(BankingError):
    code = "not_found"
    status_code = 404


class PersistenceError(BankingError):
    code = "persistence_error"
    status_code = 500


class ConnectionBlockedError(BankingError):
    code = "connection_blocked"
    status_code = 409

    def __init__(self, message: str, *, provider: str | None = None, state: str | None = None) -> None:
        super().__init__(message, provider=provider)
        self.state = state

    def to_dict(self) -> dict[str, str]:
        out = super().to_dict()
        if self.state:
            out["state"] = self.state
        return out


class RefundNotAllowedError(BankingError):
    code = "refund_not_allowed"
    status_code = 409


class NotImplementedByProviderError(BankingError):
    code = "not_implemented"
    status_code = 501


class InvalidRequestError(BankingError):
    code = "invalid_request"
    status_code = 400
