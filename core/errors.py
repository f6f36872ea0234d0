"""
core/errors.py -- Exception taxonomy for the reconciliation and revocation core.

Fatal (abort the batch run before any mutation):
  ConfigurationError -- bad or missing profile -> node mapping
  StoreError         -- credential database unreachable or unreadable

Soft (per daemon call, logged and left for the next pass):
  DaemonUnreachable  -- timeout, transport error, 5xx
  DaemonRejected     -- the daemon refused the call (duplicate add, unknown
                        key). Callers treat this as already satisfied.
"""


class ConfigurationError(Exception):
    """Invalid node mapping or profile configuration."""


class StoreError(Exception):
    """The credential store could not be reached or queried."""


class DaemonError(Exception):
    """Base class for failed calls to a gateway daemon."""

    def __init__(self, node_url: str, message: str) -> None:
        super().__init__(f"{node_url}: {message}")
        self.node_url = node_url


class DaemonUnreachable(DaemonError):
    pass


class DaemonRejected(DaemonError):
    pass


class UnknownAccount(Exception):
    """An account action named a user the store has never seen."""
