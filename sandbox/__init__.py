"""Default code interpreter: validated Python in a child process."""

from .python_sandbox import PythonSandbox, validate_code

__all__ = ["PythonSandbox", "validate_code"]
