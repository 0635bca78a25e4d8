"""The per-message turn loop.

One call to ``TurnOrchestrator.handle_user_message`` drives up to
``max_code_rounds`` rounds of:

    request (LLM) → execute (sandbox) → classify → feedback or terminal

and, when the round cap or the cumulative sandbox budget is hit without a
terminal answer, one forced-final round. History and facts are owned by
the caller and mutated in place; nothing is committed to history after
the cancel token fires.
"""

from __future__ import annotations

import re
import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

import requests

from .cancellation import CancelToken
from .chat_config import ChatConfig
from .context import convert_to_llm_messages, transform_context
from .event_bus import (
    CODE_EXECUTION_END,
    CODE_EXECUTION_START,
    LLM_REQUEST_END,
    LLM_REQUEST_START,
    TURN_END,
    TURN_START,
    EventBus,
    get_event_bus,
    set_event_bus,
)
from .facts import extract_facts, render_facts_block
from .limits import get_limit, trunc
from .llm_client import Completion, fetch_completion
from .output import (
    build_execution_feedback,
    build_status_feedback,
    collect_terminal_output,
    handle_overflow,
    has_observable_output,
)
from .paths import ensure_output_dir, resolve_path
from .prompts import build_system_prompt
from .sandbox_guard import SHARED_SANDBOX_LOCK, Interpreter, SandboxLock, run_guarded
from .types import (
    STATUS_ERROR,
    STATUS_OK,
    AssistantEntry,
    EndpointSettings,
    Fact,
    HistoryEntry,
    SandboxOptions,
    SandboxResult,
    Step,
    UserEntry,
    feedback_entry,
)

# ---- Fixed messages ----

TRUNCATED_RESPONSE_MESSAGE = (
    "Your response was truncated (output token limit reached). Please write shorter "
    "code or split your analysis into smaller steps using continue_thinking()."
)
NO_OUTPUT_HINT = "Your code produced no output. Use print() to show results to the user."
BUDGET_NUDGE = (
    "Maximum cumulative sandbox runtime exceeded. Please provide your final answer "
    "now (do not call continue_thinking())."
)
ROUNDS_NUDGE = (
    "You have reached the maximum number of code execution rounds. Please provide "
    "your final answer now (do not call continue_thinking())."
)
BUDGET_EXHAUSTED_TEXT = (
    "(Sandbox execution budget exhausted. The model's response could not be executed.)"
)
NO_USABLE_RESPONSE_TEXT = (
    "(The model did not produce a usable response. Its output may have been "
    "truncated or contained errors.)"
)
NOTHING_TO_DUMP_TEXT = "No LLM call has been made yet, nothing to dump."
DIRECT_EXECUTION_HEADER = (
    "# Direct user execution\n"
    "# These results do not go to the LLM, so do not reference any of these results in your LLM conversation.\n"
    "# Any text overflow etc. are the user's responsibility.\n"
    "# Timeouts may not apply to you (check the package's code if you want to know more).\n\n"
)

_EXEC_RE = re.compile(r"^/exec\s+(.+)$")
_DUMP_RE = re.compile(r"^/dump_llm_instructions\s*$")

# ```python, ```py and bare fences; \s+ also matches inline fences
_FENCE_RE = re.compile(r"```(?:python|py)?\s+([\s\S]*?)```", re.IGNORECASE)


class ChatCommandError(ValueError):
    """Invalid slash command usage."""


def extract_code_from_fences(text: str) -> str | None:
    """Join the bodies of markdown code fences, or None if there are none."""
    blocks = _FENCE_RE.findall(text)
    if not blocks:
        return None
    return "\n\n".join(block.rstrip() for block in blocks)


@dataclass
class TurnResult:
    """What one user message produced: the answer and the executed steps."""
    text: str
    steps: list[Step] = field(default_factory=list)


@dataclass
class _TurnState:
    token: CancelToken
    system_prompt: str
    options: SandboxOptions
    max_rounds: int
    steps: list[Step] = field(default_factory=list)
    cumulative_ms: float = 0.0

    @property
    def budget_exhausted(self) -> bool:
        return self.cumulative_ms >= get_limit("sandbox.max_cumulative_ms")


class TurnOrchestrator:
    """Runs turns for one conversation against one endpoint and directory.

    Args:
        endpoint: Where completions are requested.
        allowed_dir: Root the sandbox may read; outputs go under its
            ``ai_chat_output/`` subdirectory.
        interpreter: Code interpreter. Defaults to ``PythonSandbox``.
        sandbox_lock: Single-flight lock around the interpreter. Defaults to
            the process-wide lock.
        event_bus: Progress events go here. Defaults to the context bus.
        http: Optional ``requests.Session`` for LLM calls.
    """

    def __init__(
        self,
        endpoint: EndpointSettings,
        allowed_dir: str | Path,
        *,
        interpreter: Interpreter | None = None,
        sandbox_lock: SandboxLock | None = None,
        event_bus: EventBus | None = None,
        http: requests.Session | None = None,
    ):
        if interpreter is None:
            from sandbox import PythonSandbox

            interpreter = PythonSandbox()
        self.endpoint = endpoint
        self.allowed_dir = Path(allowed_dir)
        self.interpreter = interpreter
        self.sandbox_lock = sandbox_lock if sandbox_lock is not None else SHARED_SANDBOX_LOCK
        self.bus = event_bus if event_bus is not None else get_event_bus()
        self.http = http
        # Last request payload (system + messages [+ reply]) for /dump_llm_instructions
        self.last_sent_messages: list[dict] | None = None

    def reset_last_sent_messages(self) -> None:
        self.last_sent_messages = None

    # ---- Public entry point ----

    def handle_user_message(
        self,
        message: str,
        history: list[HistoryEntry],
        facts: list[Fact],
        config: ChatConfig,
        cancel_event: threading.Event | None = None,
    ) -> TurnResult:
        """Process one user message and return the answer shown to the user.

        Raises:
            TurnCancelled / TurnTimeout: the caller cancelled or the per-call
                timeout passed.
            LLMHTTPError, LLMProtocolError, requests.RequestException: the
                endpoint failed for good.
            ChatCommandError: bad ``/exec`` usage.
        """
        # Helpers that emit through the context bus run on this thread too
        set_event_bus(self.bus)
        exec_match = _EXEC_RE.match(message)
        if exec_match:
            return self._run_exec_command(exec_match.group(1).strip(), config, cancel_event)
        if _DUMP_RE.match(message):
            return self._dump_llm_instructions()

        history.append(UserEntry(content=message))

        state = _TurnState(
            token=CancelToken(cancel_event, config.timeout_seconds),
            system_prompt=build_system_prompt(config, render_facts_block(facts)),
            options=config.sandbox_options(),
            max_rounds=config.max_code_rounds,
        )
        self.bus.emit(TURN_START, level="info", summary=f"[Turn] {trunc(message)}",
                      data={"message": message})

        final_text = ""
        rounds_exhausted = False
        round_no = 0
        while True:
            if round_no >= state.max_rounds:
                rounds_exhausted = True
                break
            # Skip the request once the sandbox budget is gone; forced-final follows
            if state.budget_exhausted:
                break

            completion = self._request(history, config, state)
            raw = completion.content
            if not raw.strip():
                break

            rounds_remaining = state.max_rounds - (round_no + 1)
            if completion.finish_reason == "length":
                self._commit(history, state, [
                    AssistantEntry(content=raw),
                    feedback_entry(build_status_feedback({
                        "success": False,
                        "error_type": "TruncatedResponse",
                        "message": TRUNCATED_RESPONSE_MESSAGE,
                        "rounds_remaining": rounds_remaining,
                    }), STATUS_ERROR),
                ])
                round_no += 1
                continue

            code, result = self._execute(raw, state)
            self.bus.emit(CODE_EXECUTION_END, level="debug",
                          summary=_result_summary(result),
                          data={"result": result.to_dict()})
            state.steps.append(Step(code=code, result=result))
            round_id = f"round-{uuid.uuid4().hex[:8]}"

            terminal = False
            entries: list[HistoryEntry] = [AssistantEntry(content=code)]
            if not result.success:
                entries.append(feedback_entry(
                    build_execution_feedback(result, rounds_remaining), STATUS_ERROR))
            elif result.continue_thinking_called:
                entries.append(feedback_entry(
                    build_execution_feedback(result, rounds_remaining), STATUS_OK))
            elif not has_observable_output(result):
                entries.append(feedback_entry(build_status_feedback({
                    "success": True,
                    "no_output": True,
                    "hint": NO_OUTPUT_HINT,
                    "rounds_remaining": rounds_remaining,
                }), STATUS_ERROR))
            else:
                terminal = True
                final_text = handle_overflow(collect_terminal_output(result), self.allowed_dir)
                entries.append(feedback_entry(
                    build_execution_feedback(result, rounds_remaining), STATUS_OK))
                entries.append(AssistantEntry(content=final_text))
            self._commit(history, state, entries)
            if result.success:
                extract_facts(result, code, round_id, facts)
            if terminal:
                break
            round_no += 1

        if not final_text and (rounds_exhausted or state.budget_exhausted):
            final_text = self._forced_final(history, facts, config, state)

        if not final_text:
            final_text = NO_USABLE_RESPONSE_TEXT

        self.bus.emit(TURN_END, level="info",
                      summary=f"[Turn] done after {len(state.steps)} step(s)",
                      data={"text": final_text, "steps": [s.to_dict() for s in state.steps]})
        return TurnResult(text=final_text, steps=state.steps)

    # ---- Round pieces ----

    def _request(self, history: list[HistoryEntry], config: ChatConfig, state: _TurnState) -> Completion:
        """Send the bounded history; record the payload before and the reply after."""
        messages = convert_to_llm_messages(transform_context(history, config.context_window_tokens))
        self.last_sent_messages = [{"role": "system", "content": state.system_prompt}, *messages]

        self.bus.emit(LLM_REQUEST_START, level="debug",
                      summary=f"[LLM] Sending {len(messages)} message(s) to {self.endpoint.model}",
                      data={"messages": len(messages), "model": self.endpoint.model})
        completion = fetch_completion(
            self.endpoint.endpoint_url,
            self.endpoint.api_key,
            self.endpoint.model,
            state.system_prompt,
            messages,
            config.max_retries,
            state.token,
            config.temperature,
            http=self.http,
        )
        state.token.raise_if_set()
        self.bus.emit(LLM_REQUEST_END, level="debug",
                      summary=f"[LLM] Reply: {len(completion.content)} chars, finish_reason={completion.finish_reason}",
                      data={"finish_reason": completion.finish_reason})
        self.last_sent_messages = [
            *self.last_sent_messages,
            {"role": "assistant", "content": completion.content},
        ]
        return completion

    def _execute(self, raw: str, state: _TurnState) -> tuple[str, SandboxResult]:
        """Run *raw*; on a syntax error retry once with fenced code extracted."""
        self.bus.emit(CODE_EXECUTION_START, level="debug",
                      summary=f"[Sandbox] Executing {len(raw.splitlines())} line(s)",
                      data={"code": raw})
        start = time.monotonic()
        code = raw
        result = run_guarded(self.interpreter, code, self.allowed_dir, state.options,
                             state.token, self.sandbox_lock)
        if not result.success and result.error_type == "SyntaxError":
            extracted = extract_code_from_fences(raw)
            if extracted and extracted != raw:
                code = extracted
                result = run_guarded(self.interpreter, code, self.allowed_dir, state.options,
                                     state.token, self.sandbox_lock)
        state.cumulative_ms += (time.monotonic() - start) * 1000
        state.token.raise_if_set()
        return code, result

    def _forced_final(
        self,
        history: list[HistoryEntry],
        facts: list[Fact],
        config: ChatConfig,
        state: _TurnState,
    ) -> str:
        """One last nudged request after the round or time budget ran out.

        Returns the terminal text, or "" when nothing usable came back.
        """
        nudge = BUDGET_NUDGE if state.budget_exhausted else ROUNDS_NUDGE
        self._commit(history, state, [feedback_entry(nudge, STATUS_ERROR)])

        completion = self._request(history, config, state)
        raw = completion.content

        if completion.finish_reason == "length":
            # Never execute a truncated reply
            self._commit(history, state, [AssistantEntry(content=raw)])
            return ""
        if not raw.strip():
            return ""
        if state.budget_exhausted:
            self._commit(history, state, [AssistantEntry(content=BUDGET_EXHAUSTED_TEXT)])
            return BUDGET_EXHAUSTED_TEXT

        code, result = self._execute(raw, state)
        self.bus.emit(CODE_EXECUTION_END, level="debug",
                      summary=_result_summary(result),
                      data={"result": result.to_dict()})
        state.steps.append(Step(code=code, result=result))

        final_text = ""
        # continue_thinking() is ignored here: any success is terminal
        if result.success:
            final_text = handle_overflow(collect_terminal_output(result), self.allowed_dir)
        entries: list[HistoryEntry] = [
            AssistantEntry(content=code),
            feedback_entry(
                build_execution_feedback(result, 0),
                STATUS_OK if result.success else STATUS_ERROR,
            ),
        ]
        if final_text:
            entries.append(AssistantEntry(content=final_text))
        self._commit(history, state, entries)
        if result.success:
            extract_facts(result, code, "forced-final", facts)
        return final_text

    def _commit(self, history: list[HistoryEntry], state: _TurnState, entries: list[HistoryEntry]) -> None:
        """Append one round's entries, or none of them if the token has fired.

        Turns run on worker threads, so a cancel landing after this check is
        only seen at the next one; the round just committed stays.
        """
        state.token.raise_if_set()
        history.extend(entries)

    # ---- Slash commands ----

    def _run_exec_command(
        self,
        file_path: str,
        config: ChatConfig,
        cancel_event: threading.Event | None,
    ) -> TurnResult:
        """``/exec <file.py>``: run a user script directly, no LLM involved."""
        self.bus.emit(TURN_START, level="info", summary=f"[Turn] /exec {file_path}",
                      data={"message": f"/exec {file_path}"})
        if not file_path.endswith(".py"):
            raise ChatCommandError("/exec only supports .py files")
        resolved = resolve_path(self.allowed_dir, file_path)
        code = resolved.read_text(encoding="utf-8")

        self.bus.emit(CODE_EXECUTION_START, level="debug",
                      summary=f"[Sandbox] Executing {file_path}", data={"code": code})
        token = CancelToken(cancel_event)
        result = run_guarded(self.interpreter, code, self.allowed_dir,
                             config.sandbox_options(), token, self.sandbox_lock)
        token.raise_if_set()
        self.bus.emit(CODE_EXECUTION_END, level="debug",
                      summary=_result_summary(result), data={"result": result.to_dict()})

        text = DIRECT_EXECUTION_HEADER + collect_terminal_output(result)
        steps = [Step(code=code, result=result)]
        self.bus.emit(TURN_END, level="info", summary="[Turn] /exec done",
                      data={"text": text, "steps": [s.to_dict() for s in steps]})
        return TurnResult(text=text, steps=steps)

    def _dump_llm_instructions(self) -> TurnResult:
        """``/dump_llm_instructions``: write the last payload to a log file."""
        self.bus.emit(TURN_START, level="info", summary="[Turn] /dump_llm_instructions",
                      data={"message": "/dump_llm_instructions"})
        if not self.last_sent_messages:
            text = NOTHING_TO_DUMP_TEXT
        else:
            out_dir = ensure_output_dir(self.allowed_dir)
            date = datetime.now(timezone.utc).strftime("%Y-%m-%d")
            out_file = out_dir / f"analyst-chat-{date}-{uuid.uuid4()}.log"
            content = "\n\n".join(
                f"=== Message {i}: {msg['role']} ===\n\n{msg['content']}"
                for i, msg in enumerate(self.last_sent_messages, start=1)
            )
            out_file.write_text(content, encoding="utf-8")
            rel = out_file.relative_to(out_dir.parent).as_posix()
            text = f"LLM instructions dumped to {rel}"
        self.bus.emit(TURN_END, level="info", summary=f"[Turn] {text}",
                      data={"text": text, "steps": []})
        return TurnResult(text=text, steps=[])


def _result_summary(result: SandboxResult) -> str:
    if result.success:
        flag = " (continue_thinking)" if result.continue_thinking_called else ""
        return f"[Sandbox] ok, {len(result.prints)} print(s){flag}"
    timeout = " (timeout)" if result.is_timeout else ""
    return f"[Sandbox] {result.error_type}{timeout}: {trunc(result.message or '')}"
