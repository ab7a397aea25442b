"""
NumberSweep error taxonomy.
Parse and roster errors are fatal to a session; mutation errors are per customer.
"""


class NumberSweepError(Exception):
    def __init__(self, message):
        super().__init__(message)
        self.message = message


class ParseError(NumberSweepError):
    """Upload contained no usable phone numbers."""


class MissingStoreError(NumberSweepError):
    """No store selected for ingestion or batch."""


class RosterFetchError(NumberSweepError):
    """A roster page could not be fetched."""

    def __init__(self, message, store_id=None, page=None, status_code=None):
        super().__init__(message)
        self.store_id = store_id
        self.page = page
        self.status_code = status_code


class CustomerApiError(NumberSweepError):
    """Remote customer API returned an error or was unreachable."""

    def __init__(self, message, status_code=None, detail=None):
        super().__init__(message)
        self.status_code = status_code
        self.detail = detail


class MutationError(NumberSweepError):
    def __init__(self, message, customer_id=None, status_code=None):
        super().__init__(message)
        self.customer_id = customer_id
        self.status_code = status_code


class SessionStateError(NumberSweepError):
    """Illegal session transition (including re-entrant execution)."""
