"""Exception types raised by the metering pipeline."""


class MeteringError(Exception):
    """Base class for every error raised by this package."""


class RecordValidationError(MeteringError):
    """A queue message does not describe a billable usage record."""


class ThrottlingError(MeteringError):
    """An external API rejected a call because of rate limiting."""


class BillingApiError(MeteringError):
    """The billing API rejected a request for a reason retrying will not fix."""

    def __init__(self, code: str, message: str):
        super().__init__(f"{code}: {message}")
        self.code = code
        self.message = message


class StoreQueryError(MeteringError):
    """The usage record store could not be queried at all."""


class NotAttemptedError(MeteringError):
    """An earlier record of the same customer failed, so this one was held back."""
