"""Request and outcome types for scheduled tasks.

Where Result stops and exceptions take over:

* ``TaskClock.create_task`` / ``update_task`` raise ``ConfigurationError``
  for bad definitions; these are caller mistakes, not runtime conditions.

* ``Scheduler.run_task_now`` returns ``RunNowResult``.  The ``Ok`` side is
  the ``ExecutionOutcome`` of the run (which may itself carry an ``error``
  status: the pipeline failing is a recorded outcome, not a failed call).
  ``Err`` carries a ``RunNowError`` whose code the route layer maps to a
  response (``NOT_FOUND`` -> 404, ``LOCKED`` -> 409, ...).
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field
from typing_extensions import TypeAliasType

from taskclock.core.models.schedule import SchedulePattern
from taskclock.core.types.result import Result
from taskclock.core.types.status import RunStatus


class TaskDefinition(BaseModel):
    """Everything a user supplies to create a scheduled task."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)
    enabled: bool = True
    schedule: SchedulePattern
    payload: dict[str, Any]


class TaskUpdate(BaseModel):
    """Partial edit of a task; None leaves the field unchanged."""

    model_config = ConfigDict(frozen=True)

    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)
    enabled: Optional[bool] = None
    schedule: Optional[SchedulePattern] = None
    payload: Optional[dict[str, Any]] = None


@dataclass(slots=True, frozen=True)
class ExecutionOutcome:
    """What one execution of a task produced.

    Fields:
        status: QUEUED when the pipeline accepted the payload, ERROR otherwise
        error: failure message (None on success)
        result: whatever the pipeline returned (None on failure)
    """

    status: RunStatus
    error: Optional[str] = None
    result: Any = None

    @property
    def ok(self) -> bool:
        return self.status is RunStatus.QUEUED

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {'status': self.status.value}
        if self.error is not None:
            body['error'] = self.error
        if self.result is not None:
            body['result'] = self.result
        return body


class RunNowErrorCode(str, Enum):
    """Why an on-demand run did not execute."""

    NOT_FOUND = 'NOT_FOUND'
    LOCKED = 'LOCKED'
    EXECUTION_FAILED = 'EXECUTION_FAILED'


@dataclass(slots=True, frozen=True)
class RunNowError:
    """Error payload carried inside ``Err(...)`` for on-demand runs.

    Fields:
        code: failure category
        message: human-readable description
        retryable: whether trying again later can succeed
        task_id: the requested task id
        exception: original cause (EXECUTION_FAILED only)
        details: extra context, e.g. the lease holder for LOCKED
    """

    code: RunNowErrorCode
    message: str
    retryable: bool
    task_id: str
    exception: BaseException | None = None
    details: dict[str, Any] | None = None


RunNowResult = TypeAliasType('RunNowResult', Result[ExecutionOutcome, RunNowError])
