"""
Python code sandbox: AST validation and subprocess execution.

Validates model-written Python for safety, then runs it in a child
interpreter (``python -m sandbox.runtime``) with a wall-clock timeout.
The child exposes the data-query helpers and reports a SandboxResult.
"""

from __future__ import annotations

import ast
import json
import os
import subprocess
import sys
import tempfile
from pathlib import Path

from analyst.logging import get_logger, tagged
from analyst.sandbox_guard import Interpreter
from analyst.types import SandboxOptions, SandboxResult

_PROJECT_ROOT = Path(__file__).resolve().parent.parent


# ---- AST Validation ----

# Allowed import modules (top-level names)
_ALLOWED_IMPORTS = frozenset({
    "pandas", "numpy",
    "math", "statistics", "random", "decimal", "fractions",
    "datetime", "json", "re", "string", "textwrap",
    "collections", "itertools", "functools", "operator",
    "copy", "typing", "dataclasses",
})

# Blocked import modules
_BLOCKED_IMPORTS = frozenset({
    "os", "sys", "io", "pathlib", "shutil", "glob",
    "socket", "http", "urllib", "requests",
    "subprocess", "ctypes", "multiprocessing",
    "importlib", "builtins", "pickle", "marshal",
    "shlex", "signal", "tempfile", "webbrowser", "code", "codeop",
    "pty", "fcntl", "termios", "resource",
    "asyncio", "concurrent", "threading",
    "xmlrpc", "ftplib", "smtplib", "poplib", "imaplib", "telnetlib",
})

# Blocked builtins
_BLOCKED_BUILTINS = frozenset({
    "exec", "eval", "compile", "__import__",
    "globals", "locals", "vars",
    "breakpoint", "exit", "quit", "input",
    "getattr", "setattr", "delattr",
    "open",  # file I/O goes through read_file / write_file
    "memoryview",
})

# Blocked attribute names (on any object)
_BLOCKED_ATTRS = frozenset({
    "system", "popen", "spawn", "Popen", "check_output", "check_call",
    # File I/O outside the helpers
    "read_csv", "read_excel", "read_json", "read_parquet", "read_pickle",
    "read_table", "read_fwf", "read_sql",
    "to_pickle", "to_csv", "to_excel", "to_json", "to_parquet", "to_sql",
    "savez", "savez_compressed", "loadtxt", "savetxt",
    "genfromtxt", "fromfile", "tofile", "memmap",
})


def validate_code(code: str) -> list[str]:
    """Validate sandbox code using AST analysis.

    Args:
        code: Python code string to validate. Must already parse.

    Returns:
        List of violation descriptions. Empty list means code is allowed.
    """
    violations = []
    tree = ast.parse(code)

    for node in ast.walk(tree):
        if isinstance(node, ast.Import):
            for alias in node.names:
                violations.extend(_check_module(alias.name, f"'{alias.name}'"))

        if isinstance(node, ast.ImportFrom):
            if node.level:
                violations.append("Relative imports are not allowed")
            elif node.module:
                violations.extend(_check_module(node.module, f"'from {node.module}'"))

        if isinstance(node, ast.Name) and node.id in _BLOCKED_BUILTINS:
            violations.append(f"Blocked builtin: '{node.id}'")

        if isinstance(node, ast.Attribute):
            if node.attr.startswith("__") and node.attr.endswith("__"):
                violations.append(f"Dunder attribute access '{node.attr}' is not allowed")
            if node.attr in _BLOCKED_ATTRS:
                violations.append(
                    f"Blocked attribute: '{node.attr}' (use ls/read_file/read_table/write_file)"
                )

        if isinstance(node, (ast.Global, ast.Nonlocal)):
            violations.append("global/nonlocal statements are not allowed")

        if isinstance(node, (ast.AsyncFunctionDef, ast.AsyncFor, ast.AsyncWith, ast.Await)):
            violations.append("Async constructs are not allowed")

    return violations


def _check_module(name: str, shown: str) -> list[str]:
    top_level = name.split(".")[0]
    if top_level in _BLOCKED_IMPORTS:
        return [f"Blocked import: {shown} (module '{top_level}' is not allowed)"]
    if top_level not in _ALLOWED_IMPORTS:
        return [f"Unknown import: {shown}; only pandas, numpy and pure-computation "
                f"standard library modules are allowed"]
    return []


# ---- Interpreter ----

class PythonSandbox(Interpreter):
    """Runs code in a fresh child interpreter per call.

    Enforces the duration cap with a subprocess timeout. Memory and
    allocation caps are passed through in the job file but not enforced.
    """

    def __init__(self, python_exe: str | None = None):
        self.python_exe = python_exe or sys.executable

    def execute(self, code: str, allowed_dir: str | Path, options: SandboxOptions) -> SandboxResult:
        try:
            violations = validate_code(code)
        except SyntaxError as e:
            return SandboxResult.failure("SyntaxError", f"{e.msg} (line {e.lineno})")
        if violations:
            return SandboxResult.failure(
                "PermissionError",
                "Code validation failed:\n" + "\n".join(f"  - {v}" for v in violations),
            )

        with tempfile.TemporaryDirectory(prefix="analyst_sandbox_") as tmp:
            job_path = Path(tmp) / "job.json"
            result_path = Path(tmp) / "result.json"
            job_path.write_text(json.dumps({
                "code": code,
                "allowed_dir": str(Path(allowed_dir).resolve()),
                "options": options.to_dict(),
                "result_path": str(result_path),
            }), encoding="utf-8")
            return self._run(job_path, result_path, allowed_dir, options.max_duration_secs)

    def _run(self, job_path: Path, result_path: Path, allowed_dir, timeout: float) -> SandboxResult:
        env = {
            "PATH": os.environ.get("PATH", "/usr/bin:/bin"),
            "HOME": os.environ.get("HOME", "/tmp"),
            "PYTHONPATH": str(_PROJECT_ROOT),
            "PYTHONIOENCODING": "utf-8",
        }
        try:
            proc = subprocess.run(
                [self.python_exe, "-m", "sandbox.runtime", str(job_path)],
                capture_output=True,
                text=True,
                timeout=timeout,
                env=env,
                cwd=str(allowed_dir),
            )
        except subprocess.TimeoutExpired:
            return SandboxResult.failure(
                "TimeoutError",
                f"Execution exceeded the time limit of {timeout:g} seconds",
                is_timeout=True,
            )

        if proc.returncode != 0 or not result_path.exists():
            stderr = proc.stderr.strip()
            get_logger().debug(
                f"[Sandbox] child exited {proc.returncode}: {stderr[-2000:]}", extra=tagged("sandbox")
            )
            return SandboxResult.failure(
                "RuntimeError",
                f"Sandbox process exited with code {proc.returncode}: {stderr[-2000:] or 'no output'}",
            )
        with open(result_path, "r", encoding="utf-8") as f:
            return SandboxResult.from_dict(json.load(f))
