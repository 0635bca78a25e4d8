"""
Child-side runtime for the Python sandbox.

Run as ``python -m sandbox.runtime <job.json>``. Reads the code, the
allowed directory and the resource options from the job file, executes
the code with the data-query helpers in scope, and writes a
``SandboxResult`` dict to ``job["result_path"]``.

The last statement, if it is a bare expression, is evaluated separately
so its value can be returned alongside the captured prints.
"""

from __future__ import annotations

import ast
import fnmatch
import json
import math
import os
import sys
import traceback
from pathlib import Path

from analyst.limits import get_limit
from analyst.paths import OUTPUT_DIR_NAME, PathEscapeError, resolve_path

_TABLE_READERS = {
    ".csv": {"sep": ","},
    ".tsv": {"sep": "\t"},
    ".tab": {"sep": "\t"},
    ".txt": {"sep": None, "engine": "python"},
}


# ---- Value conversion ----

def to_jsonable(value, _depth: int = 0):
    """Convert *value* into plain JSON types (pandas/numpy included)."""
    if _depth > 50:
        return repr(value)
    if value is None or isinstance(value, (bool, int, str)):
        return value
    if isinstance(value, float):
        return value if math.isfinite(value) else str(value)
    if isinstance(value, dict):
        return {str(k): to_jsonable(v, _depth + 1) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [to_jsonable(v, _depth + 1) for v in value]

    module = type(value).__module__ or ""
    if module.startswith("pandas"):
        import pandas as pd

        if isinstance(value, pd.DataFrame):
            return to_jsonable(value.to_dict(orient="records"), _depth + 1)
        if isinstance(value, pd.Series):
            return to_jsonable(value.to_dict(), _depth + 1)
        if isinstance(value, pd.Timestamp):
            return value.isoformat()
    if module.startswith("numpy"):
        if hasattr(value, "tolist"):
            return to_jsonable(value.tolist(), _depth + 1)
    return repr(value)


def _dumps(value) -> str:
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False)


def gate_output_size(value, max_bytes: int):
    """Shrink *value* so its JSON form fits *max_bytes*.

    Lists keep a prefix of items, strings keep whole lines, dicts gate
    their large members. Returns ``(gated, truncated)``.
    """
    serialized = _dumps(value)
    total = len(serialized.encode("utf-8"))
    if total <= max_bytes:
        return value, False

    if isinstance(value, list):
        items = []
        size = 2
        for item in value:
            item_bytes = len(_dumps(item).encode("utf-8")) + 1
            if size + item_bytes > max_bytes:
                break
            items.append(item)
            size += item_bytes
        return {
            "items": items,
            "_truncated": {
                "kept": len(items),
                "total": len(value),
                "dropped": len(value) - len(items),
                "total_bytes": total,
            },
        }, True

    if isinstance(value, str):
        head = value.encode("utf-8")[:max_bytes].decode("utf-8", errors="ignore")
        cut = head.rfind("\n")
        lines = head[:cut] if cut > 0 else head
        kept = lines.count("\n") + 1
        total_lines = value.count("\n") + 1
        return f"{lines}\n[TRUNCATED: showing {kept} of {total_lines} lines, {total} bytes total]", True

    if isinstance(value, dict):
        quarter = max_bytes // 4
        gated = {}
        for key, val in value.items():
            if len(_dumps(val).encode("utf-8")) > quarter:
                gated[key], _ = gate_output_size(val, quarter)
            else:
                gated[key] = val
        if len(_dumps(gated).encode("utf-8")) <= max_bytes:
            return gated, True

    return {
        "_truncated": {
            "message": "Value too large to return. Print a summary instead.",
            "total_bytes": total,
        }
    }, True


# ---- Sandbox helpers ----

class SandboxHelpers:
    """Data-query functions exposed to sandboxed code."""

    def __init__(self, allowed_dir: str, options: dict):
        self.allowed_dir = os.path.abspath(allowed_dir)
        self.options = options
        self.continue_thinking_called = False
        self.prints: list[str] = []
        self._print_bytes = 0
        self._print_cap = get_limit("sandbox.print_capture_bytes")

    def namespace(self) -> dict:
        return {
            "print": self.print,
            "continue_thinking": self.continue_thinking,
            "ls": self.ls,
            "read_file": self.read_file,
            "write_file": self.write_file,
            "peek_table": self.peek_table,
            "read_table": self.read_table,
        }

    def print(self, *args, sep=" ", end="\n", file=None, flush=False):
        text = (sep if sep is not None else " ").join(str(a) for a in args)
        text += end if end is not None else "\n"
        size = len(text.encode("utf-8"))
        # Beyond the cap, output is dropped but execution continues
        if self._print_bytes + size <= self._print_cap:
            self.prints.append(text)
            self._print_bytes += size

    def continue_thinking(self):
        self.continue_thinking_called = True

    def ls(self, pattern: str | None = None):
        """List files under the analysis directory, optionally by glob."""
        cap = get_limit("sandbox.max_ls_entries")
        files = []
        capped = False
        for dirpath, dirnames, filenames in os.walk(self.allowed_dir):
            dirnames.sort()
            for name in sorted(filenames):
                rel = Path(os.path.relpath(os.path.join(dirpath, name), self.allowed_dir)).as_posix()
                if pattern and not _glob_match(rel, pattern):
                    continue
                if len(files) >= cap:
                    capped = True
                    break
                files.append(rel)
            if capped:
                break
        if capped:
            return {
                "files": files,
                "_truncated": {
                    "message": f"Listing capped at {cap} entries. "
                               "Use a glob pattern to narrow results (e.g. ls('**/*.csv')).",
                    "cap": cap,
                },
            }
        return files

    def read_file(self, path: str, offset: int = 0, max_bytes: int | None = None):
        """Read a text file, at most the configured read cap."""
        if not isinstance(offset, int) or offset < 0:
            raise ValueError(f"read_file: offset must be a non-negative integer, got {offset!r}")
        limit = self.options["max_read_bytes"]
        if max_bytes is not None:
            if not isinstance(max_bytes, int) or max_bytes < 0:
                raise ValueError(f"read_file: max_bytes must be a non-negative integer, got {max_bytes!r}")
            limit = min(limit, max_bytes)
        resolved = resolve_path(self.allowed_dir, path)
        with open(resolved, "rb") as f:
            total = os.fstat(f.fileno()).st_size
            f.seek(offset)
            data = f.read(limit)
        return {
            "content": data.decode("utf-8", errors="replace"),
            "bytes_read": len(data),
            "total_size": total,
            "offset": offset,
        }

    def write_file(self, path: str, content: str):
        """Write *content* to a new file under the output directory."""
        if not isinstance(content, str):
            raise TypeError("write_file: content must be a string")
        size = len(content.encode("utf-8"))
        cap = self.options["max_write_bytes"]
        if size > cap:
            raise ValueError(f"Content size {size} bytes exceeds write limit of {cap} bytes")
        out_dir = os.path.join(self.allowed_dir, OUTPUT_DIR_NAME)
        os.makedirs(out_dir, exist_ok=True)
        tentative = os.path.abspath(os.path.join(out_dir, path))
        if os.path.commonpath([out_dir, tentative]) != out_dir:
            raise PathEscapeError(f'Path "{path}" is outside the allowed directory')
        os.makedirs(os.path.dirname(tentative), exist_ok=True)
        # Resolve against the root so a symlinked output dir cannot escape
        resolved = resolve_path(self.allowed_dir, os.path.relpath(tentative, self.allowed_dir))
        if resolved.exists():
            raise FileExistsError(
                f'File "{path}" already exists in {OUTPUT_DIR_NAME}/. Choose a different name.'
            )
        resolved.write_text(content, encoding="utf-8")
        rel = Path(os.path.relpath(tentative, out_dir)).as_posix()
        return {"path": f"{OUTPUT_DIR_NAME}/{rel}", "bytes_written": size}

    def _load_table(self, path: str, nrows: int | None = None, usecols=None):
        import pandas as pd

        resolved = resolve_path(self.allowed_dir, path)
        suffix = resolved.suffix.lower()
        if suffix in _TABLE_READERS:
            return pd.read_csv(resolved, nrows=nrows, usecols=usecols, **_TABLE_READERS[suffix])
        if suffix in (".json", ".jsonl", ".ndjson"):
            df = pd.read_json(resolved, lines=suffix != ".json")
        elif suffix == ".parquet":
            df = pd.read_parquet(resolved, columns=usecols)
        else:
            raise ValueError(f"Unsupported table format: {suffix or '(none)'}")
        if usecols is not None:
            df = df[list(usecols)]
        return df.head(nrows) if nrows is not None else df

    def peek_table(self, path: str):
        """Summarize a table: columns, dtypes, row count (capped) and head."""
        cap = self.options["max_records_peek"]
        df = self._load_table(path, nrows=cap + 1)
        capped = len(df) > cap
        if capped:
            df = df.head(cap)
        return {
            "path": path,
            "columns": [str(c) for c in df.columns],
            "dtypes": {str(c): str(t) for c, t in df.dtypes.items()},
            "rows": len(df),
            "rows_capped": capped,
            "head": to_jsonable(df.head(5)),
        }

    def read_table(self, path: str, columns=None, query: str | None = None,
                   sample_fraction: float | None = None, limit: int | None = None):
        """Load a table as a DataFrame, filtered and capped."""
        cap = self.options["max_records_read_table"]
        df = self._load_table(path, usecols=columns)
        if query:
            df = df.query(query)
        if sample_fraction is not None:
            if not 0 < sample_fraction <= 1:
                raise ValueError("sample_fraction must be in (0, 1]")
            df = df.sample(frac=sample_fraction, random_state=0)
        n = cap if limit is None else min(int(limit), cap)
        return df.head(n).reset_index(drop=True)


def _glob_match(rel: str, pattern: str) -> bool:
    if fnmatch.fnmatch(rel, pattern):
        return True
    # "**/x" also matches "x" at the top level
    return pattern.startswith("**/") and fnmatch.fnmatch(rel, pattern[3:])


# ---- Execution ----

def _split_trailing_expression(tree: ast.Module):
    """Return (body module, trailing expression or None)."""
    if tree.body and isinstance(tree.body[-1], ast.Expr):
        last = tree.body.pop()
        return tree, ast.Expression(body=last.value)
    return tree, None


def execute(code: str, allowed_dir: str, options: dict) -> dict:
    """Execute *code* and return a SandboxResult dict."""
    helpers = SandboxHelpers(allowed_dir, options)
    try:
        tree = ast.parse(code, filename="<sandbox>", mode="exec")
    except SyntaxError as e:
        return {
            "success": False,
            "error_type": "SyntaxError",
            "message": f"{e.msg} (line {e.lineno})",
            "is_timeout": False,
            "prints": [],
        }

    body, trailing = _split_trailing_expression(tree)
    scope = {"__name__": "__sandbox__", **helpers.namespace()}
    try:
        exec(compile(body, "<sandbox>", "exec"), scope)
        value = eval(compile(trailing, "<sandbox>", "eval"), scope) if trailing is not None else None
    except Exception as e:
        tb = traceback.extract_tb(e.__traceback__)
        lines = [f.lineno for f in tb if f.filename == "<sandbox>"]
        where = f" (line {lines[-1]})" if lines else ""
        return {
            "success": False,
            "error_type": type(e).__name__,
            "message": f"{e}{where}",
            "is_timeout": False,
            "prints": helpers.prints,
        }

    converted = to_jsonable(value)
    gated, truncated = gate_output_size(converted, options["max_output_bytes"])
    return {
        "success": True,
        "value": gated,
        "ended_with_expression": converted is not None,
        "continue_thinking_called": helpers.continue_thinking_called,
        "prints": helpers.prints,
        "truncated": truncated,
    }


def main(argv: list[str] | None = None) -> int:
    argv = sys.argv[1:] if argv is None else argv
    if len(argv) != 1:
        print("usage: python -m sandbox.runtime <job.json>", file=sys.stderr)
        return 2
    with open(argv[0], "r", encoding="utf-8") as f:
        job = json.load(f)
    result = execute(job["code"], job["allowed_dir"], job["options"])
    with open(job["result_path"], "w", encoding="utf-8") as f:
        json.dump(result, f, ensure_ascii=False)
    return 0


if __name__ == "__main__":
    sys.exit(main())
