"""
Activity: Execute Task — runs the AI coding agent on a task under a hard
wall-clock deadline and collects whatever it produced.

The agent is launched once, in its own process group, with a prompt that
states the deadline. Its stdout is a stream of JSON records (one per line);
assistant text becomes the result, everything else is only logged. When the
budget runs out the group gets SIGTERM, then SIGKILL after a grace period.
run_task() always returns an ExecutionResult and never leaves the process
running.
"""

from __future__ import annotations

import json
import logging
import os
import signal
import subprocess
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

import config
from features.work_items.models import ExecutionResult

log = logging.getLogger(__name__)

_KILL = getattr(signal, "SIGKILL", signal.SIGTERM)

CommandBuilder = Callable[[str], list[str]]


def build_prompt(task: str, max_minutes: float) -> str:
    return (
        f"You have a maximum of {max_minutes:g} minutes to complete this task. "
        "If you cannot finish, provide what you have accomplished so far.\n\n"
        "IMPORTANT: Save all generated files and artifacts in the current working directory.\n\n"
        f"TASK:\n{task}\n\n"
        "Please proceed with the task now."
    )


def build_command(prompt: str) -> list[str]:
    """argv for the agent CLI, restricted to the allowed tool set."""
    return [
        config.CLAUDE_BIN, "-p", prompt,
        "--output-format", "stream-json",
        "--verbose",
        "--no-session-persistence",
        "--allowedTools", config.ALLOWED_TOOLS,
    ]


@dataclass
class _StreamState:
    parts: list[str] = field(default_factory=list)
    final: str | None = None

    @property
    def output(self) -> str:
        if self.final:
            return self.final
        return "\n".join(p for p in self.parts if p)


def run_task(
    task: str,
    budget_minutes: float,
    work_dir: Path | str,
    command_builder: CommandBuilder = build_command,
    grace_sec: float | None = None,
) -> ExecutionResult:
    """Run ``task`` in ``work_dir`` for at most ``budget_minutes``."""
    grace = config.TASK_KILL_GRACE_SEC if grace_sec is None else grace_sec
    budget_sec = max(0.0, budget_minutes * 60)
    argv = command_builder(build_prompt(task, budget_minutes))

    log.info("Starting task process (max %g min) in %s", budget_minutes, work_dir)
    started = time.monotonic()
    try:
        proc = subprocess.Popen(
            argv,
            cwd=str(work_dir),
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            encoding="utf-8",
            errors="replace",
            env=os.environ.copy(),
            start_new_session=(os.name == "posix"),
        )
    except OSError as e:
        log.error("Failed to start task process: %s", e)
        return ExecutionResult(success=False, output="", error=f"Failed to start task process: {e}")

    log.info("Task process started with PID %d", proc.pid)

    stderr_chunks: list[str] = []
    stderr_reader = threading.Thread(target=_drain, args=(proc.stderr, stderr_chunks), daemon=True)
    stderr_reader.start()

    timed_out = threading.Event()
    timer = threading.Timer(budget_sec, _expire, args=(proc, grace, timed_out, budget_minutes))
    timer.daemon = True
    timer.start()

    state = _StreamState()
    try:
        for line in proc.stdout or ():
            _handle_line(line, state)
    except Exception as e:
        log.error("Error reading task output: %s", e)
    finally:
        remaining = max(0.0, budget_sec - (time.monotonic() - started))
        try:
            returncode = proc.wait(timeout=remaining + grace + 1)
        except subprocess.TimeoutExpired:
            _signal(proc, _KILL)
            returncode = proc.wait()
        timer.cancel()
        stderr_reader.join(timeout=grace)

    elapsed = (time.monotonic() - started) / 60
    log.info(
        "Task process finished in %.2f min with code %s%s",
        elapsed, returncode, " (deadline hit)" if timed_out.is_set() else "",
    )

    error_text = "".join(stderr_chunks)
    if error_text.strip():
        log.warning("Task stderr: %s", error_text[:200])
    return ExecutionResult(
        success=returncode == 0,
        output=state.output,
        error=error_text or None,
    )


def _handle_line(line: str, state: _StreamState) -> None:
    line = line.strip()
    if not line:
        return
    try:
        record = json.loads(line)
    except json.JSONDecodeError:
        log.info("[task] %s", line[:500])
        return
    if not isinstance(record, dict):
        log.info("[task] %s", line[:500])
        return

    kind = record.get("type")
    if kind == "system" and record.get("subtype") == "init":
        log.info("Session %s… model %s", str(record.get("session_id", ""))[:8], record.get("model"))
    elif kind == "assistant":
        for block in (record.get("message") or {}).get("content") or []:
            block_type = block.get("type")
            if block_type == "text":
                state.parts.append(block.get("text", ""))
            elif block_type == "tool_use":
                log.info("Tool: %s", block.get("name"))
            elif block_type == "thinking":
                log.debug("Thinking: %s", str(block.get("thinking", ""))[:200])
    elif kind == "result":
        log.info(
            "Agent done: cost $%.4f, %.1fs",
            record.get("total_cost_usd") or 0, (record.get("duration_ms") or 0) / 1000,
        )
        if record.get("result"):
            state.final = record["result"]


def _drain(stream, sink: list[str]) -> None:
    try:
        for chunk in stream:
            sink.append(chunk)
    except (OSError, ValueError) as e:
        log.debug("stderr reader stopped: %s", e)


def _expire(proc: subprocess.Popen, grace: float, timed_out: threading.Event, budget_minutes: float) -> None:
    if proc.poll() is not None:
        return
    timed_out.set()
    log.warning("Task exceeded time limit (%g min), terminating...", budget_minutes)
    _signal(proc, signal.SIGTERM)
    try:
        proc.wait(timeout=grace)
    except subprocess.TimeoutExpired:
        log.warning("Task process ignored SIGTERM for %.1fs, killing", grace)
        _signal(proc, _KILL)


def _signal(proc: subprocess.Popen, sig: int) -> None:
    """Signal the whole process group so helpers the agent spawned go too."""
    if proc.poll() is not None:
        return
    try:
        if os.name == "posix":
            os.killpg(proc.pid, sig)
        elif sig == signal.SIGTERM:
            proc.terminate()
        else:
            proc.kill()
    except ProcessLookupError:
        pass
