from __future__ import annotations


class ApiError(Exception):
    def __init__(
        self,
        *,
        code: str,
        message: str,
        error_class: str,
        retryable: bool,
        http_status: int,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.error_class = error_class
        self.retryable = retryable
        self.http_status = http_status

    def as_dict(self) -> dict[str, object]:
        return {
            "code": self.code,
            "message": self.message,
            "class": self.error_class,
            "retryable": self.retryable,
        }


class RetryableJobError(Exception):
    """Raised by job handlers that want the runtime to retry with backoff."""

    def __init__(self, message: str, *, code: str = "JOB_RETRY_REQUESTED") -> None:
        super().__init__(message)
        self.code = code
        self.message = message


class ChargeProcessorError(Exception):
    def __init__(
        self,
        message: str,
        *,
        error_code: str | None = None,
        charge_id: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.charge_id = charge_id


class ChargeProcessorUnavailableError(ChargeProcessorError):
    pass


class ChargeProcessorCardError(ChargeProcessorError):
    pass


class ChargeProcessorInvalidRequestError(ChargeProcessorError):
    pass
