"""Shared test fixtures."""

from __future__ import annotations

import json
import threading
import time
from collections.abc import Callable
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path

import pytest

from analyst import limits
from analyst.event_bus import EventBus, set_event_bus
from analyst.sandbox_guard import Interpreter, SandboxLock
from analyst.types import SandboxOptions, SandboxResult


def completion_body(content: str, finish_reason: str = "stop") -> dict:
    return {
        "id": "chatcmpl-test",
        "object": "chat.completion",
        "choices": [
            {
                "index": 0,
                "message": {"role": "assistant", "content": content},
                "finish_reason": finish_reason,
            }
        ],
    }


class ScriptedResponse:
    def __init__(self, status: int = 200, body=None, headers: dict | None = None, delay: float = 0.0):
        self.status = status
        self.body = body
        self.headers = headers or {}
        self.delay = delay

    def encoded(self) -> bytes:
        if isinstance(self.body, (dict, list)):
            return json.dumps(self.body).encode("utf-8")
        return (self.body or "").encode("utf-8")


def reply(content: str, finish_reason: str = "stop") -> ScriptedResponse:
    return ScriptedResponse(200, completion_body(content, finish_reason))


class MockLLMServer:
    """Local HTTP server answering POST/GET with scripted responses in order."""

    def __init__(self):
        self.responses: list[ScriptedResponse] = []
        self.requests: list[dict] = []
        self._lock = threading.Lock()
        server = self

        class Handler(BaseHTTPRequestHandler):
            def _respond(self):
                length = int(self.headers.get("Content-Length") or 0)
                raw = self.rfile.read(length) if length else b""
                with server._lock:
                    server.requests.append({
                        "method": self.command,
                        "path": self.path,
                        "headers": dict(self.headers),
                        "body": json.loads(raw) if raw else None,
                        "time": time.monotonic(),
                    })
                    scripted = server.responses.pop(0) if server.responses else ScriptedResponse(
                        500, "no scripted response left"
                    )
                if scripted.delay:
                    time.sleep(scripted.delay)
                payload = scripted.encoded()
                try:
                    self.send_response(scripted.status)
                    self.send_header("Content-Type", "application/json")
                    self.send_header("Content-Length", str(len(payload)))
                    for key, value in scripted.headers.items():
                        self.send_header(key, value)
                    self.end_headers()
                    self.wfile.write(payload)
                except (BrokenPipeError, ConnectionResetError):
                    pass

            do_POST = _respond
            do_GET = _respond

            def log_message(self, format, *args):
                pass

        self._httpd = ThreadingHTTPServer(("127.0.0.1", 0), Handler)
        self._httpd.daemon_threads = True
        self._thread = threading.Thread(target=self._httpd.serve_forever, daemon=True)

    @property
    def base_url(self) -> str:
        host, port = self._httpd.server_address[:2]
        return f"http://{host}:{port}"

    @property
    def url(self) -> str:
        return f"{self.base_url}/v1"

    def script(self, *responses: ScriptedResponse) -> None:
        with self._lock:
            self.responses.extend(responses)

    def start(self):
        self._thread.start()

    def stop(self):
        self._httpd.shutdown()
        self._httpd.server_close()


@pytest.fixture()
def llm_server():
    server = MockLLMServer()
    server.start()
    yield server
    server.stop()


@pytest.fixture()
def fast_backoff(monkeypatch):
    """Shrink exponential backoff so retry tests run quickly."""
    monkeypatch.setattr(limits, "_overrides", {
        "llm.backoff_base_ms": 10,
        "llm.backoff_cap_ms": 50,
    })


class FakeInterpreter(Interpreter):
    """Returns scripted results (or computes them) and records the code it saw."""

    def __init__(self, results: list[SandboxResult] | Callable[[str], SandboxResult] | None = None):
        self._results = results if results is not None else []
        self.calls: list[str] = []
        self.options: list[SandboxOptions] = []

    def execute(self, code: str, allowed_dir, options: SandboxOptions) -> SandboxResult:
        self.calls.append(code)
        self.options.append(options)
        if callable(self._results):
            return self._results(code)
        if not self._results:
            return SandboxResult(success=True, prints=["done\n"])
        return self._results.pop(0)


@pytest.fixture()
def bus():
    bus = EventBus(session_id="test")
    set_event_bus(bus)
    return bus


@pytest.fixture()
def events(bus):
    """Every event emitted on the test bus, in order."""
    recorded = []
    bus.subscribe(recorded.append)
    return recorded


@pytest.fixture()
def sandbox_lock():
    return SandboxLock(poll_seconds=0.01)


@pytest.fixture()
def allowed_dir(tmp_path) -> Path:
    root = tmp_path / "data"
    root.mkdir()
    return root
