"""Exceptions shared by the webhook pipeline, the queue and the workers."""


class PrimaError(Exception):
    """Base class for all application errors."""


class StoreUnavailable(PrimaError):
    """A state transition could not be persisted.

    Surfaces as HTTP 500 so the gateway retries the webhook delivery.
    """


class LockBusy(PrimaError):
    """The per-resource lock could not be acquired within the retry budget."""


class ClassificationFailure(PrimaError):
    """A classification stage produced no usable result."""


class GatewayError(PrimaError):
    """The outbound messaging gateway rejected or timed out a send."""
