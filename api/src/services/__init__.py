from api.src.services.build_spec_parser import (
    parse_build_spec,
    parse_build_spec_dict,
    load_build_spec,
    BuildSpecError,
)
from api.src.services.registry import (
    RunRecord,
    TaskRegistry,
    RunRegistry,
)
from api.src.services.dispatcher import RequestDispatcher

__all__ = [
    "parse_build_spec",
    "parse_build_spec_dict",
    "load_build_spec",
    "BuildSpecError",
    "RunRecord",
    "TaskRegistry",
    "RunRegistry",
    "RequestDispatcher",
]
