"""
Build specification parser and validator.
"""

import json
import yaml
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import ValidationError

from controller.src.models.step import BuildSpec

class BuildSpecError(Exception):
    """Raised when the build specification is invalid."""
    pass

def parse_build_spec(content: str) -> BuildSpec:
    """Parse a build specification from YAML (or JSON) text."""
    try:
        data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise BuildSpecError(f"Invalid YAML: {e}")

    return parse_build_spec_dict(data)

def parse_build_spec_dict(data: Optional[Dict[str, Any]]) -> BuildSpec:
    """Validate a build specification from a dict."""
    if not data:
        raise BuildSpecError("Empty build specification")

    if not isinstance(data, dict):
        raise BuildSpecError("Build specification must be a mapping")

    try:
        return BuildSpec.model_validate(data)
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        raise BuildSpecError(f"Invalid build specification: {problems}")

def load_build_spec(path: str) -> BuildSpec:
    """Load the build specification file (.json, .yml or .yaml)."""
    spec_path = Path(path)
    try:
        content = spec_path.read_text(encoding="utf-8")
    except OSError as e:
        raise BuildSpecError(f"Cannot read build specification {path}: {e}")

    if spec_path.suffix == ".json":
        try:
            return parse_build_spec_dict(json.loads(content))
        except json.JSONDecodeError as e:
            raise BuildSpecError(f"Invalid JSON: {e}")

    return parse_build_spec(content)
