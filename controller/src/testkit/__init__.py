from controller.src.testkit.builders import (
    python_command,
    python_step,
    make_spec,
    make_step_outcome,
    make_outcome,
)

__all__ = [
    "python_command",
    "python_step",
    "make_spec",
    "make_step_outcome",
    "make_outcome",
]
