"""
Wire models for the request protocol.

Requests and replies are JSON documents with camelCase keys, e.g.
{"action": "run", "taskName": "demo"} -> {"action": "run", "success": true, "buildReference": 0}
"""

import json
import re
from typing import Any, Iterator, Literal, Optional

from pydantic import BaseModel, ValidationError, model_validator
from pydantic.alias_generators import to_camel

_WHITESPACE = re.compile(r"\s*")

class RequestError(Exception):
    """A request that cannot be served; answered with an error reply."""
    kind = "RequestError"

class UnknownTask(RequestError):
    kind = "UnknownTask"

class UnknownRun(RequestError):
    kind = "UnknownRun"

class MalformedRequest(RequestError):
    kind = "MalformedRequest"

class WireModel(BaseModel):
    class Config:
        alias_generator = to_camel
        populate_by_name = True

class Request(WireModel):
    action: Literal["run", "status"]
    task_name: Optional[str] = None
    build_reference: Optional[int] = None

    @model_validator(mode="after")
    def _check_arguments(self) -> "Request":
        if self.action == "run" and not self.task_name:
            raise ValueError("'taskName' is required for action 'run'")
        if self.action == "status" and self.build_reference is None:
            raise ValueError("'buildReference' is required for action 'status'")
        return self

class RunResponse(WireModel):
    action: str = "run"
    success: bool = True
    build_reference: int

class StatusResponse(WireModel):
    completed: bool
    result_link: str
    published: bool = False
    error: Optional[str] = None

class ErrorResponse(WireModel):
    action: Optional[str] = None
    success: bool = False
    error: str
    message: str

def encode_response(response: WireModel) -> bytes:
    return response.model_dump_json(by_alias=True, exclude_none=True).encode("utf-8")

def split_documents(text: str) -> Iterator[Any]:
    """
    Yield each JSON document in a received chunk.
    Raises MalformedRequest at the first one that does not decode.
    """
    decoder = json.JSONDecoder()
    pos = _WHITESPACE.match(text, 0).end()
    while pos < len(text):
        try:
            document, pos = decoder.raw_decode(text, pos)
        except json.JSONDecodeError as e:
            raise MalformedRequest(f"Invalid JSON: {e}")
        yield document
        pos = _WHITESPACE.match(text, pos).end()

def parse_request(document: Any) -> Request:
    if not isinstance(document, dict):
        raise MalformedRequest("Request must be a JSON object")
    try:
        return Request.model_validate(document)
    except ValidationError as e:
        errors = "; ".join(err["msg"] for err in e.errors())
        raise MalformedRequest(f"Invalid request: {errors}")
