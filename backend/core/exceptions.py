"""
Exception taxonomy for the automation core.

Nothing here is process-fatal: callers catch these and degrade to a
recorded status (failed task execution, failed workflow run, scan error).
"""

from typing import Any


class AutomationError(Exception):
    """Base class for every error raised by the automation core."""


class NotFoundError(AutomationError):
    entity = "Record"

    def __init__(self, record_id: Any):
        self.record_id = record_id
        super().__init__(f"{self.entity} {record_id} not found")


class AlertNotFoundError(NotFoundError):
    entity = "Alert"


class TaskNotFoundError(NotFoundError):
    entity = "Task"


class WorkflowNotFoundError(NotFoundError):
    entity = "Workflow"


class EntityNotFoundError(NotFoundError):
    entity = "Entity"


class TaskConfigError(AutomationError):
    """A scheduled task's config map is missing or has invalid keys."""


class ActionConfigError(AutomationError):
    """A workflow action's config map is missing or has invalid keys."""


class StoreTimeoutError(AutomationError):
    """A data store call exceeded ``Settings.store_timeout_seconds``."""


class AlertScanError(AutomationError):
    """One or more alert category scans failed.

    ``failures`` maps the alert type value to the error its scan raised.
    """

    def __init__(self, failures: dict[str, str]):
        self.failures = failures
        categories = ", ".join(sorted(failures))
        super().__init__(f"Alert scan failed for: {categories}")
