"""
errors.py

Failure taxonomy for list maintenance runs.

Only remote-store and lock errors ever cross component boundaries as
exceptions. Plan rejections travel as data (see models.Rejection).
"""

from typing import Optional


class ListkeeperError(Exception):
    """Base class for every listkeeper failure"""


class RemoteStoreError(ListkeeperError):
    """A call against the remote list store did not succeed"""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class TransientRemoteError(RemoteStoreError):
    """Retryable: rate limited, timed out, 5xx, connection dropped"""


class PermanentRemoteError(RemoteStoreError):
    """Not retried: contact/list not found, invalid id, auth failure"""


class AdvisoryTimeoutOrSchemaError(ListkeeperError):
    """The advisory call timed out or returned an unusable payload"""

    TIMEOUT = "timeout"
    SCHEMA_ERROR = "schema_error"

    def __init__(self, message: str, kind: str = SCHEMA_ERROR):
        super().__init__(message)
        self.kind = kind


class InvariantViolation(ListkeeperError):
    """A ledger write would break a membership invariant"""

    def __init__(self, message: str, contact_id: Optional[int] = None):
        super().__init__(message)
        self.contact_id = contact_id


class LockContentionError(ListkeeperError):
    """Another mutating run holds the five-list lock - retry later"""

    def __init__(self, holder_run_id: Optional[str] = None):
        super().__init__(f"List set is locked by run {holder_run_id or 'unknown'}")
        self.holder_run_id = holder_run_id


class NotYetEligibleError(ListkeeperError):
    """Post-send maintenance requested before the minimum elapsed time"""

    def __init__(self, send_id: str, eligible_at):
        super().__init__(f"Send {send_id} is not eligible for maintenance until {eligible_at.isoformat()}")
        self.send_id = send_id
        self.eligible_at = eligible_at
