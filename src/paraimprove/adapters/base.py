"""Agent runner interfaces, incremental stream decoding and subprocess implementation."""

from __future__ import annotations

import asyncio
import codecs
import json
import logging
import os
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Protocol

from paraimprove.errors import AgentExecutionFailure

log = logging.getLogger(__name__)

# Env vars that interfere with nested agent processes (e.g. running from
# within Claude Code would set CLAUDECODE=1 causing the claude subprocess to
# refuse with "cannot launch inside another session").
STRIP_ENV_VARS = {
    "CLAUDECODE", "CLAUDE_CODE_ENTRYPOINT", "CLAUDE_REPL",
    "CLAUDE_CODE_PACKAGE_DIR",
}


def now_iso() -> str:
    return datetime.now(UTC).isoformat()


def clean_env(base: dict[str, str] | None = None) -> dict[str, str]:
    source = os.environ if base is None else base
    return {k: v for k, v in source.items() if k not in STRIP_ENV_VARS}


@dataclass(slots=True)
class AgentEvent:
    kind: str  # tool_use | text | result | system | log
    payload: dict[str, Any]
    timestamp: str = field(default_factory=now_iso)
    tool_name: str | None = None
    tool_input: dict[str, Any] | None = None


class EventInterpreter(Protocol):
    def interpret(self, message: Any) -> list[AgentEvent]: ...


class AgentRun(Protocol):
    """Handle on one running agent attempt."""

    @property
    def pid(self) -> int | None: ...

    @property
    def finished(self) -> bool: ...

    @property
    def returncode(self) -> int | None: ...

    def drain_events(self) -> list[AgentEvent]: ...

    def output_tail(self, chars: int) -> str: ...

    async def terminate(self, reason: str) -> None: ...


class AgentRunner(Protocol):
    async def submit(self, prompt: str, *, cwd: Path, log_file: Path | None = None) -> AgentRun: ...


class StreamJsonDecoder:
    """Incremental decoder for a stream of concatenated JSON documents.

    Chunks may split a document anywhere.  A document is emitted only once it
    is complete; a failed decode of the buffered head means "wait for more
    data" unless a later line already decodes cleanly, in which case the head
    is a malformed fragment and is dropped.  Non-JSON lines are dropped too.

    After a failed decode the head is not parsed again until new data brings
    a newline or the buffer ends on a closing bracket, so a large document
    arriving in many chunks is not re-parsed from its start on every chunk.
    """

    def __init__(self, *, max_buffer: int = 16 * 1024 * 1024) -> None:
        self._decoder = json.JSONDecoder()
        self._buffer = ""
        self._max_buffer = max_buffer
        self._stalled_at: int | None = None
        self.dropped = 0

    def feed(self, chunk: str) -> list[Any]:
        self._buffer += chunk
        out: list[Any] = []
        while True:
            self._buffer = self._buffer.lstrip()
            if not self._buffer:
                break
            if self._buffer[0] not in "{[":
                newline = self._buffer.find("\n")
                if newline == -1:
                    break
                self._drop(newline + 1)
                continue
            if not self._worth_decoding():
                self._check_overflow()
                break
            try:
                value, end = self._decoder.raw_decode(self._buffer)
            except json.JSONDecodeError:
                if self._resync():
                    continue
                self._stalled_at = len(self._buffer)
                self._check_overflow()
                break
            out.append(value)
            self._buffer = self._buffer[end:]
            self._stalled_at = None
        return out

    def _worth_decoding(self) -> bool:
        if self._stalled_at is None:
            return True
        if "\n" in self._buffer[self._stalled_at:]:
            return True
        return self._buffer.rstrip().endswith(("}", "]"))

    def _check_overflow(self) -> None:
        if len(self._buffer) > self._max_buffer:
            self._drop(len(self._buffer))

    def close(self) -> list[Any]:
        """Flush at end of stream; whatever cannot be decoded is noise."""
        out = self.feed("\n")
        if self._buffer.strip():
            self._drop(len(self._buffer))
        return out

    def _resync(self) -> bool:
        idx = self._buffer.find("\n")
        while idx != -1:
            rest = self._buffer[idx + 1:].lstrip()
            if rest.startswith(("{", "[")):
                try:
                    self._decoder.raw_decode(rest)
                except json.JSONDecodeError:
                    pass
                else:
                    self._drop(len(self._buffer) - len(rest))
                    return True
            idx = self._buffer.find("\n", idx + 1)
        return False

    def _drop(self, count: int) -> None:
        fragment = self._buffer[:count]
        self._buffer = self._buffer[count:]
        self._stalled_at = None
        if fragment.strip():
            self.dropped += 1
            log.debug("dropped stream fragment: %r", fragment[:120])


class SubprocessRun:
    """A spawned agent process whose output is drained by background tasks."""

    def __init__(
        self,
        process: asyncio.subprocess.Process,
        interpreter: EventInterpreter,
        *,
        log_file: Path | None = None,
        tail_chars: int = 16_000,
    ) -> None:
        self.process = process
        self._interpreter = interpreter
        self._decoder = StreamJsonDecoder()
        self._log_file = log_file
        self._tail_chars = tail_chars
        self._events: list[AgentEvent] = []
        self._transcript = ""
        self._raw_tail = ""
        self._tasks = [
            asyncio.create_task(self._pump_stream(process.stdout, "stdout")),
            asyncio.create_task(self._pump_stream(process.stderr, "stderr")),
            asyncio.create_task(process.wait()),
        ]

    @property
    def pid(self) -> int | None:
        return self.process.pid

    @property
    def finished(self) -> bool:
        return all(task.done() for task in self._tasks)

    @property
    def returncode(self) -> int | None:
        return self.process.returncode if self.finished else None

    @property
    def dropped_fragments(self) -> int:
        return self._decoder.dropped

    def drain_events(self) -> list[AgentEvent]:
        events, self._events = self._events, []
        return events

    def output_tail(self, chars: int) -> str:
        text = self._transcript if self._transcript.strip() else self._raw_tail
        return text[-chars:]

    async def wait(self) -> int:
        await asyncio.gather(*self._tasks)
        return self.process.returncode if self.process.returncode is not None else -1

    async def terminate(self, reason: str) -> None:
        if self.process.returncode is not None:
            return
        log.info("Terminating pid %s: %s", self.process.pid, reason)
        try:
            self.process.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(self.process.wait(), timeout=5)
        except TimeoutError:
            self.process.kill()
            await self.process.wait()

    async def _pump_stream(self, stream: asyncio.StreamReader | None, stream_name: str) -> None:
        if stream is None:
            return
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            chunk = await stream.read(65536)
            if not chunk:
                break
            self._consume(decoder.decode(chunk), stream_name)
        self._consume(decoder.decode(b"", final=True), stream_name)
        if stream_name == "stdout":
            self._dispatch(self._decoder.close())

    def _consume(self, text: str, stream_name: str) -> None:
        if not text:
            return
        self._write_log(text, stream_name)
        self._raw_tail = (self._raw_tail + text)[-self._tail_chars:]
        if stream_name == "stdout":
            self._dispatch(self._decoder.feed(text))
        else:
            self._append_transcript(text)

    def _dispatch(self, messages: list[Any]) -> None:
        for message in messages:
            try:
                events = self._interpreter.interpret(message)
            except (TypeError, ValueError, KeyError, AttributeError) as exc:
                self._decoder.dropped += 1
                log.debug("dropped uninterpretable stream event %r: %s", str(message)[:120], exc)
                continue
            for event in events:
                if event.kind in {"text", "result"}:
                    self._append_transcript(str(event.payload.get("text", "")) + "\n")
                self._events.append(event)

    def _append_transcript(self, text: str) -> None:
        self._transcript = (self._transcript + text)[-self._tail_chars:]

    def _write_log(self, text: str, stream_name: str) -> None:
        if self._log_file is None:
            return
        try:
            with self._log_file.open("a", encoding="utf-8") as fh:
                if stream_name == "stderr":
                    fh.write(f"[stderr] {text}")
                else:
                    fh.write(text)
        except OSError as exc:
            log.debug("could not write agent log %s: %s", self._log_file, exc)


class SubprocessAgentRunner:
    """Runs a coding agent as ``argv`` with the prompt on stdin."""

    def __init__(
        self,
        argv: list[str],
        interpreter_factory: Callable[[], EventInterpreter],
        *,
        env: dict[str, str] | None = None,
    ) -> None:
        if not argv:
            raise ValueError("agent argv must not be empty")
        self.argv = list(argv)
        self._interpreter_factory = interpreter_factory
        self._env = env

    async def submit(self, prompt: str, *, cwd: Path, log_file: Path | None = None) -> SubprocessRun:
        # Create the log file eagerly so it exists even if the agent
        # produces no output.
        try:
            if log_file is not None:
                log_file.parent.mkdir(parents=True, exist_ok=True)
                log_file.touch(exist_ok=True)
            process = await asyncio.create_subprocess_exec(
                *self.argv,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(cwd),
                env=self._env if self._env is not None else clean_env(),
            )
        except OSError as exc:
            raise AgentExecutionFailure(
                f"Cannot start agent {self.argv[0]!r}: {exc}", details={"argv": self.argv},
            ) from exc

        run = SubprocessRun(process, self._interpreter_factory(), log_file=log_file)
        if process.stdin is not None:
            try:
                process.stdin.write(prompt.encode("utf-8"))
                await process.stdin.drain()
                process.stdin.close()
            except (BrokenPipeError, ConnectionResetError) as exc:
                log.warning("Agent pid %s closed stdin early: %s", process.pid, exc)
        return run
