"""
Error taxonomy for the report lifecycle.

Lifecycle errors (ValidationError, StateViolation, ReportNotFound,
NotAuthorized, UploadFailure) are raised before anything is committed and
surface to the acting user. Fan-out errors (PropagationPartialFailure,
NotificationDeliveryFailure) happen after the master write and are reported,
never rolled back.
"""

from typing import List, Optional


class CityFixError(Exception):
    """Base class for all CityFix errors"""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(CityFixError):
    status_code = 422


class StateViolation(CityFixError):
    status_code = 409

    def __init__(self, action: str, current_status: Optional[str]):
        super().__init__(f"Cannot {action} a report in status '{current_status or 'new'}'")
        self.action = action
        self.current_status = current_status


class ReportNotFound(CityFixError):
    status_code = 404

    def __init__(self, report_id: str):
        super().__init__(f"Report {report_id} not found")
        self.report_id = report_id


class NotAuthorized(CityFixError):
    status_code = 403


class UploadFailure(CityFixError):
    status_code = 502


class UploadCancelled(CityFixError):
    """User cancelled an evidence upload. Prior report state is untouched."""

    status_code = 499

    def __init__(self, message: str = "Upload cancelled"):
        super().__init__(message)


class PropagationPartialFailure(CityFixError):
    def __init__(
        self,
        master_id: str,
        attempted: int,
        succeeded: int,
        failed_ids: List[str],
        lookup_error: Optional[str] = None,
    ):
        if lookup_error:
            message = f"Could not look up duplicates of {master_id}: {lookup_error}"
        else:
            message = f"Synced {succeeded}/{attempted} duplicates of {master_id}; failed: {', '.join(failed_ids)}"
        super().__init__(message)
        self.lookup_error = lookup_error
        self.master_id = master_id
        self.attempted = attempted
        self.succeeded = succeeded
        self.failed_ids = failed_ids


class NotificationDeliveryFailure(CityFixError):
    def __init__(self, chunk_index: int, reason: str):
        super().__init__(f"Push chunk {chunk_index} failed: {reason}")
        self.chunk_index = chunk_index
        self.reason = reason
