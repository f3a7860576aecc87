"""Tests for the request wire format."""

import json

import pytest
from api.src.models.request import (
    ErrorResponse,
    MalformedRequest,
    RunResponse,
    StatusResponse,
    encode_response,
    parse_request,
    split_documents,
)

def test_parse_run_request():
    request = parse_request({"action": "run", "taskName": "demo"})

    assert request.action == "run"
    assert request.task_name == "demo"

def test_parse_status_request():
    request = parse_request({"action": "status", "buildReference": 4})

    assert request.action == "status"
    assert request.build_reference == 4

def test_run_requires_task_name():
    with pytest.raises(MalformedRequest, match="taskName"):
        parse_request({"action": "run"})

def test_status_requires_build_reference():
    with pytest.raises(MalformedRequest, match="buildReference"):
        parse_request({"action": "status"})

def test_unknown_action():
    with pytest.raises(MalformedRequest):
        parse_request({"action": "delete", "taskName": "demo"})

def test_request_must_be_object():
    with pytest.raises(MalformedRequest, match="object"):
        parse_request(["run", "demo"])

def test_split_concatenated_documents():
    text = '{"action": "run", "taskName": "a"}\n  {"action": "status", "buildReference": 0}{"x": 1} '

    assert list(split_documents(text)) == [
        {"action": "run", "taskName": "a"},
        {"action": "status", "buildReference": 0},
        {"x": 1},
    ]

def test_split_blank_text():
    assert list(split_documents("  \n")) == []

def test_split_stops_at_garbage():
    documents = split_documents('{"a": 1} not json')

    assert next(documents) == {"a": 1}
    with pytest.raises(MalformedRequest, match="Invalid JSON"):
        next(documents)

def test_encode_run_response():
    assert json.loads(encode_response(RunResponse(build_reference=3))) == {
        "action": "run",
        "success": True,
        "buildReference": 3,
    }

def test_encode_status_response_omits_missing_error():
    encoded = json.loads(encode_response(StatusResponse(completed=False, result_link="results/demo")))

    assert encoded == {"completed": False, "resultLink": "results/demo", "published": False}

def test_encode_error_response():
    encoded = json.loads(encode_response(ErrorResponse(
        action="status", error="UnknownRun", message="No run with reference 9",
    )))

    assert encoded == {
        "action": "status",
        "success": False,
        "error": "UnknownRun",
        "message": "No run with reference 9",
    }
