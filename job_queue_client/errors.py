"""Error kinds of the job queue client and classification of API failures"""

from enum import Enum
from typing import Any, Dict, Mapping, Optional

from job_queue_client.models import JobStatus


class ErrorKind(str, Enum):
    invalid_status = "invalidStatus"
    no_op_transition = "noOpTransition"
    terminal_state_violation = "terminalStateViolation"
    forbidden_transition = "forbiddenTransition"
    no_op_transition_reported = "noOpTransitionReported"
    terminal_state_violation_reported = "terminalStateViolationReported"
    forbidden_transition_reported = "forbiddenTransitionReported"
    deduplication_id_conflict = "deduplicationIdConflict"
    generic = "generic"


# stringCode values sent by the job queue API inside the error context
STRING_CODES: Dict[str, ErrorKind] = {
    "dbDeduplicationIdConflict": ErrorKind.deduplication_id_conflict,
    "statusTargetEqualsCurrent": ErrorKind.no_op_transition_reported,
    "statusTerminal": ErrorKind.terminal_state_violation_reported,
    "statusTransitionForbidden": ErrorKind.forbidden_transition_reported,
}

REPORTED_CODES: Dict[ErrorKind, str] = {kind: code for code, kind in STRING_CODES.items()}

_NO_OP_KINDS = (ErrorKind.no_op_transition, ErrorKind.no_op_transition_reported)
_TERMINAL_KINDS = (
    ErrorKind.terminal_state_violation,
    ErrorKind.terminal_state_violation_reported,
)
_FORBIDDEN_KINDS = (
    ErrorKind.forbidden_transition,
    ErrorKind.forbidden_transition_reported,
)


class ClientError(RuntimeError):
    """Failure raised by the job queue client.

    Args:
        kind: Which member of the error taxonomy this is.
        message: Human readable description.
        response_data: Raw response body returned by the API, kept verbatim.
        code: HTTP status of the failed response, 0 for local errors.
        string_code: The API's ``stringCode`` as received, if one was sent.
        job_id: Job the error refers to, when known.
        deduplication_id: Conflicting deduplication id, when known.
        current_status: Status the job was in, when known.
        target_status: Status that was requested, when known.
    """

    def __init__(
        self,
        kind: ErrorKind,
        message: str = "",
        *,
        response_data: Optional[Mapping[str, Any]] = None,
        code: int = 0,
        string_code: Any = None,
        job_id: Optional[str] = None,
        deduplication_id: Optional[str] = None,
        current_status: Optional[JobStatus] = None,
        target_status: Optional[JobStatus] = None,
    ):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.response_data = response_data
        self.code = code
        self.string_code = string_code
        self.job_id = job_id
        self.deduplication_id = deduplication_id
        self.current_status = current_status
        self.target_status = target_status

    def __repr__(self) -> str:
        return f"ClientError(kind={self.kind.value!r}, message={self.message!r})"

    @property
    def is_no_op(self) -> bool:
        return self.kind in _NO_OP_KINDS

    @property
    def is_terminal(self) -> bool:
        return self.kind in _TERMINAL_KINDS

    @property
    def is_forbidden(self) -> bool:
        return self.kind in _FORBIDDEN_KINDS

    @property
    def is_retryable(self) -> bool:
        # Only an unclassified server-side failure may go away on its own
        return self.kind is ErrorKind.generic and self.code >= 500


def _lookup(payload: Mapping[str, Any], *keys: str) -> Any:
    """Find the first key present in the nested ``context`` block or the body"""
    scopes = []
    nested = payload.get("context")
    if isinstance(nested, Mapping):
        scopes.append(nested)
    scopes.append(payload)
    for scope in scopes:
        for key in keys:
            if scope.get(key) is not None:
                return scope[key]
    return None


def _as_str(value: Any) -> Optional[str]:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (str, int)):
        return str(value)
    return None


def _as_status(value: Any) -> Optional[JobStatus]:
    try:
        return JobStatus(value)
    except (ValueError, TypeError):
        return None


def classify(
    string_code: Any,
    context: Any,
    *,
    message: Optional[str] = None,
    code: int = 0,
) -> ClientError:
    """Map an API ``stringCode`` and its response payload to a ClientError.

    Never raises: an unknown code, a non-string code or a payload that is
    not a mapping all produce a ``generic`` error carrying whatever was
    received.
    """
    text = message or (f"Job queue error: {string_code}" if string_code else "Job queue error")

    if not isinstance(context, Mapping):
        return ClientError(
            ErrorKind.generic,
            text,
            response_data=None,
            code=code,
            string_code=string_code,
        )

    kind = STRING_CODES.get(string_code) if isinstance(string_code, str) else None
    if kind is None:
        return ClientError(
            ErrorKind.generic,
            text,
            response_data=context,
            code=code,
            string_code=string_code,
            job_id=_as_str(_lookup(context, "jobId")),
        )

    return ClientError(
        kind,
        text,
        response_data=context,
        code=code,
        string_code=string_code,
        job_id=_as_str(_lookup(context, "existingJobId", "jobId")),
        deduplication_id=_as_str(_lookup(context, "deduplicationId")),
        current_status=_as_status(_lookup(context, "currentStatus")),
        target_status=_as_status(_lookup(context, "targetStatus")),
    )


def classify_response(
    http_status: int, body: Any, *, message: Optional[str] = None
) -> ClientError:
    """Classify a failed HTTP response of the job queue API"""
    string_code = None
    if isinstance(body, Mapping):
        string_code = _lookup(body, "stringCode")
        server_message = body.get("error") or body.get("message")
        if isinstance(server_message, str) and server_message:
            message = server_message
    return classify(string_code, body, message=message, code=http_status)
