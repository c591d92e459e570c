"""Commission error taxonomy.

Every failure a single operation can raise derives from ``CommissionError``.
``ZeroBasisSkip`` is deliberately outside that hierarchy: it signals an
explicit "skipped" outcome, never a failure.
"""


class CommissionError(Exception):
    """Base class for commission core failures."""


class NotFoundError(CommissionError):
    """A payment, client, run or adjustment id could not be resolved."""

    def __init__(self, kind: str, identifier):
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind} {identifier} not found")


class NoEarnerError(CommissionError):
    """The client has neither a seller nor an assigned coach."""

    def __init__(self, client_id):
        self.client_id = client_id
        super().__init__(f"No associated coach/seller for client {client_id}")


class InvalidStateTransition(CommissionError):
    """The requested change is forbidden by the current entry or run status."""


class InvalidSplitConfiguration(CommissionError):
    """Explicit splits for a client add up to more than 100%."""


class PersistenceConflict(CommissionError):
    """Uniqueness violation on (payment, earner)."""


class SkipCalculation(Exception):
    """Signals that a payment produces no ledger entries. Not an error."""

    reason = "skipped"

    def __init__(self, message: str = None):
        super().__init__(message or self.reason)


class ZeroBasisSkip(SkipCalculation):
    reason = "Zero basis"
