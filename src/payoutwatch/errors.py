"""
payoutwatch/errors.py

Exception hierarchy shared across payoutwatch components.
"""


class PayoutWatchError(Exception):
    """Base class for payoutwatch errors."""
    pass


class OracleUnavailable(PayoutWatchError):
    """The ledger could not be queried (transport, status, RPC error or timeout)."""
    pass


class PersistenceFailure(PayoutWatchError):
    """A durable state file could not be read or written."""
    pass


class DeliveryFailure(PayoutWatchError):
    """A notification could not be delivered to one destination."""
    pass


class PayoutConstructionError(PayoutWatchError):
    """A payout record could not be built (no usable tier counts)."""
    pass
