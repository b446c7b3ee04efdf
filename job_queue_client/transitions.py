"""Local checks of job status transitions, mirroring the job queue API rules"""

from types import MappingProxyType
from typing import Any, FrozenSet, Literal, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict

from job_queue_client.errors import ClientError, ErrorKind
from job_queue_client.models import TERMINAL_STATUSES, JobStatus

# Status -> statuses it may move to. Terminal statuses have no outgoing edges.
ALLOWED_TRANSITIONS: Mapping[JobStatus, FrozenSet[JobStatus]] = MappingProxyType(
    {
        JobStatus.created: frozenset({JobStatus.waiting, JobStatus.cancelled}),
        JobStatus.waiting: frozenset({JobStatus.processing, JobStatus.cancelled}),
        JobStatus.processing: frozenset(
            {
                JobStatus.success,
                JobStatus.warning,
                JobStatus.error,
                JobStatus.terminating,
                JobStatus.terminated,
            }
        ),
        JobStatus.terminating: frozenset(
            {
                JobStatus.terminated,
                JobStatus.success,
                JobStatus.warning,
                JobStatus.error,
            }
        ),
        JobStatus.success: frozenset(),
        JobStatus.warning: frozenset(),
        JobStatus.error: frozenset(),
        JobStatus.cancelled: frozenset(),
        JobStatus.terminated: frozenset(),
    }
)

_MESSAGES = {
    ErrorKind.no_op_transition: "Job is already in status \"{current}\".",
    ErrorKind.terminal_state_violation: (
        "Job in terminal status \"{current}\" cannot be moved to \"{target}\"."
    ),
    ErrorKind.forbidden_transition: (
        "Transition from \"{current}\" to \"{target}\" is not allowed."
    ),
}


class TransitionRequest(BaseModel):
    model_config = ConfigDict(frozen=True)

    current: JobStatus
    target: JobStatus


class Allowed(BaseModel):
    model_config = ConfigDict(frozen=True)

    request: TransitionRequest


class Rejected(BaseModel):
    model_config = ConfigDict(frozen=True)

    request: TransitionRequest
    violation: Literal[
        ErrorKind.no_op_transition,
        ErrorKind.terminal_state_violation,
        ErrorKind.forbidden_transition,
    ]

    def to_error(self, job_id: Optional[str] = None) -> ClientError:
        message = _MESSAGES[self.violation].format(
            current=self.request.current.value, target=self.request.target.value
        )
        return ClientError(
            self.violation,
            message,
            job_id=job_id,
            current_status=self.request.current,
            target_status=self.request.target,
        )


TransitionVerdict = Union[Allowed, Rejected]


def coerce_status(value: Any) -> JobStatus:
    """Return ``value`` as a JobStatus or raise an ``invalid_status`` error"""
    if isinstance(value, JobStatus):
        return value
    if isinstance(value, str):
        try:
            return JobStatus(value)
        except ValueError:
            pass
    raise ClientError(ErrorKind.invalid_status, f"Invalid status: \"{value}\".")


def allowed_targets(current: Any) -> FrozenSet[JobStatus]:
    return ALLOWED_TRANSITIONS[coerce_status(current)]


def validate(current: Any, target: Any) -> TransitionVerdict:
    """Decide whether a job in ``current`` may be moved to ``target``.

    Rules apply in order: same status is a no-op, a terminal job cannot
    move, and the pair must be listed in ALLOWED_TRANSITIONS.
    """
    request = TransitionRequest(current=coerce_status(current), target=coerce_status(target))
    return validate_request(request)


def validate_request(request: TransitionRequest) -> TransitionVerdict:
    if request.current == request.target:
        return Rejected(request=request, violation=ErrorKind.no_op_transition)
    if request.current in TERMINAL_STATUSES:
        return Rejected(request=request, violation=ErrorKind.terminal_state_violation)
    if request.target not in ALLOWED_TRANSITIONS[request.current]:
        return Rejected(request=request, violation=ErrorKind.forbidden_transition)
    return Allowed(request=request)
