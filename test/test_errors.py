import pytest
from job_queue_client.errors import (
    REPORTED_CODES,
    STRING_CODES,
    ClientError,
    ErrorKind,
    classify,
    classify_response,
)
from job_queue_client.models import JobStatus


def test_deduplication_conflict_keeps_payload():
    payload = {
        "error": "Duplicate job",
        "context": {
            "stringCode": "dbDeduplicationIdConflict",
            "deduplicationId": "nightly-run",
            "jobId": "1234",
        },
    }

    error = classify("dbDeduplicationIdConflict", payload)

    assert error.kind == ErrorKind.deduplication_id_conflict
    assert error.response_data is payload
    assert error.response_data == {
        "error": "Duplicate job",
        "context": {
            "stringCode": "dbDeduplicationIdConflict",
            "deduplicationId": "nightly-run",
            "jobId": "1234",
        },
    }
    assert error.deduplication_id == "nightly-run"
    assert error.job_id == "1234"
    assert error.string_code == "dbDeduplicationIdConflict"


def test_deduplication_conflict_without_context_fields():
    error = classify("dbDeduplicationIdConflict", {})

    assert error.kind == ErrorKind.deduplication_id_conflict
    assert error.deduplication_id is None
    assert error.job_id is None
    assert error.response_data == {}


@pytest.mark.parametrize(
    "string_code,kind",
    [
        ("statusTargetEqualsCurrent", ErrorKind.no_op_transition_reported),
        ("statusTerminal", ErrorKind.terminal_state_violation_reported),
        ("statusTransitionForbidden", ErrorKind.forbidden_transition_reported),
    ],
)
def test_status_codes(string_code, kind):
    payload = {
        "context": {
            "stringCode": string_code,
            "currentStatus": "success",
            "targetStatus": "processing",
        }
    }

    error = classify(string_code, payload, message="Bad Request", code=400)

    assert error.kind == kind
    assert error.code == 400
    assert error.message == "Bad Request"
    assert error.current_status == JobStatus.success
    assert error.target_status == JobStatus.processing
    assert error.response_data is payload


def test_reported_kinds_share_predicates_with_local_kinds():
    assert classify("statusTargetEqualsCurrent", {}).is_no_op
    assert classify("statusTerminal", {}).is_terminal
    assert classify("statusTransitionForbidden", {}).is_forbidden
    assert ClientError(ErrorKind.forbidden_transition).is_forbidden


@pytest.mark.parametrize("string_code", ["somethingElse", "", "STATUSTERMINAL"])
def test_unknown_code_is_generic(string_code):
    payload = {"error": "boom", "context": {"stringCode": string_code}}

    error = classify(string_code, payload, message="boom", code=400)

    assert error.kind == ErrorKind.generic
    assert error.string_code == string_code
    assert error.response_data is payload
    assert error.message == "boom"


@pytest.mark.parametrize(
    "string_code,context",
    [
        (None, {}),
        (42, {"context": []}),
        (["statusTerminal"], {"a": 1}),
        ("statusTerminal", None),
        ("dbDeduplicationIdConflict", ["not", "a", "mapping"]),
        ("unknown", "text body"),
    ],
)
def test_malformed_input_never_raises(string_code, context):
    error = classify(string_code, context, code=500)

    assert isinstance(error, ClientError)
    assert error.code == 500
    assert error.kind == ErrorKind.generic
    assert error.string_code == string_code


def test_non_mapping_context_degrades_to_generic():
    error = classify("statusTerminal", None, message="Bad Request", code=400)

    assert error.kind == ErrorKind.generic
    assert error.string_code == "statusTerminal"
    assert error.message == "Bad Request"
    assert error.response_data is None


def test_ill_typed_context_fields_are_dropped():
    payload = {
        "context": {
            "deduplicationId": {"nested": True},
            "jobId": False,
            "currentStatus": "finished",
            "targetStatus": ["processing"],
        }
    }

    error = classify("dbDeduplicationIdConflict", payload)

    assert error.kind == ErrorKind.deduplication_id_conflict
    assert error.deduplication_id is None
    assert error.job_id is None
    assert error.current_status is None
    assert error.target_status is None


def test_classify_response_reads_nested_string_code():
    body = {
        "error": "Job is already in status \"waiting\".",
        "code": 400,
        "status": "error",
        "context": {"stringCode": "statusTargetEqualsCurrent"},
    }

    error = classify_response(400, body, message="Bad Request")

    assert error.kind == ErrorKind.no_op_transition_reported
    assert error.message == "Job is already in status \"waiting\"."
    assert error.code == 400
    # the body's own "status" field is not a job status
    assert error.current_status is None


def test_classify_response_without_body():
    error = classify_response(502, None, message="Bad Gateway")

    assert error.kind == ErrorKind.generic
    assert error.message == "Bad Gateway"
    assert error.is_retryable


def test_only_generic_server_errors_are_retryable():
    assert not classify("statusTerminal", {}, code=500).is_retryable
    assert not classify("unknown", {}, code=400).is_retryable
    assert classify("unknown", {}, code=503).is_retryable


def test_reported_codes_mirror_string_codes():
    assert {REPORTED_CODES[kind]: kind for kind in REPORTED_CODES} == STRING_CODES


def test_non_string_code_is_kept_as_received():
    payload = {"context": {"stringCode": 1234}}

    error = classify_response(400, payload, message="Bad Request")

    assert error.kind == ErrorKind.generic
    assert error.string_code == 1234
    assert error.response_data is payload
