"""Offer Index error types."""


class OfferIndexError(Exception):
    """Base class for offer index failures."""


class OfferIndexUnavailableError(OfferIndexError):
    """The index store could not be reached. Callers may retry."""


class OfferIndexRowError(OfferIndexError):
    """A result row from the index store did not have the expected shape."""


class UnknownOfferIndexJobError(OfferIndexError):
    """A job payload named a variant this worker does not know.

    Signals producer/consumer deployment skew; never retried.
    """

    def __init__(self, payload: object):
        self.payload = payload
        super().__init__(f"Unhandled offer index job: {payload!r}")
