"""Claude Code CLI adapter: argv construction and stream-json interpretation."""

from __future__ import annotations

import json
from typing import Any

from paraimprove.adapters.base import AgentEvent


def claude_argv(model: str = "", binary: str = "claude") -> list[str]:
    cmd = [
        binary,
        "--print",
        "--verbose",
        "--output-format", "stream-json",
        "--dangerously-skip-permissions",
    ]
    if model:
        cmd.extend(["--model", model])
    return cmd


def _short_path(path: str) -> str:
    return "/".join(path.split("/")[-2:])


def _index(message: dict[str, Any]) -> int | None:
    value = message.get("index", 0)
    if isinstance(value, bool) or not isinstance(value, int):
        return None
    return value


def describe_tool_use(name: str, tool_input: dict[str, Any] | None) -> str:
    """Render one tool invocation as a compact activity line."""
    data = tool_input or {}
    detail = ""
    if name == "Read" and data.get("file_path"):
        detail = _short_path(str(data["file_path"]))
    elif name == "Write" and data.get("file_path"):
        detail = f"writing {_short_path(str(data['file_path']))}"
    elif name == "Edit" and data.get("file_path"):
        detail = f"editing {_short_path(str(data['file_path']))}"
    elif name == "Bash" and data.get("command"):
        detail = str(data["command"])[:50]
    elif name == "Grep" and data.get("pattern"):
        detail = f'"{str(data["pattern"])[:30]}"'
    elif name == "Glob" and data.get("pattern"):
        detail = str(data["pattern"])
    elif name == "Task":
        detail = str(data.get("description") or "subagent")
    return f"{name} {detail}".rstrip()


class ClaudeStreamInterpreter:
    """Turns decoded stream-json messages into AgentEvents.

    Handles whole assistant messages as well as the partial
    ``content_block_*`` events emitted when partial messages are enabled.
    A tool use seen both ways is reported once.
    """

    def __init__(self) -> None:
        self._seen_tool_ids: set[str] = set()
        self._block_tool: dict[int, tuple[str, str]] = {}
        self._block_input: dict[int, str] = {}

    def interpret(self, message: Any) -> list[AgentEvent]:
        if not isinstance(message, dict):
            return []
        if message.get("type") == "stream_event" and isinstance(message.get("event"), dict):
            message = message["event"]
        kind = message.get("type")

        if kind == "assistant":
            return self._assistant(message)
        if kind == "result":
            return [
                AgentEvent(
                    kind="result",
                    payload={
                        "text": str(message.get("result", "")),
                        "is_error": bool(message.get("is_error", False)),
                        "subtype": message.get("subtype"),
                        "num_turns": message.get("num_turns"),
                        "cost_usd": message.get("total_cost_usd"),
                    },
                )
            ]
        if kind == "system":
            return [AgentEvent(kind="system", payload={"subtype": message.get("subtype")})]
        if kind == "content_block_start":
            return self._block_start(message)
        if kind == "content_block_delta":
            self._block_delta(message)
            return []
        if kind == "content_block_stop":
            return self._block_stop(message)
        return []

    def _assistant(self, message: dict[str, Any]) -> list[AgentEvent]:
        body = message.get("message")
        content = body.get("content") if isinstance(body, dict) else None
        if not isinstance(content, list):
            return []
        events: list[AgentEvent] = []
        for block in content:
            if not isinstance(block, dict):
                continue
            if block.get("type") == "text" and block.get("text"):
                events.append(AgentEvent(kind="text", payload={"text": str(block["text"])}))
            elif block.get("type") == "tool_use":
                tool_id = str(block.get("id", ""))
                if tool_id and tool_id in self._seen_tool_ids:
                    continue
                if tool_id:
                    self._seen_tool_ids.add(tool_id)
                tool_input = block.get("input") if isinstance(block.get("input"), dict) else {}
                events.append(self._tool_event(str(block.get("name", "")), tool_input))
        return events

    def _block_start(self, message: dict[str, Any]) -> list[AgentEvent]:
        block = message.get("content_block")
        if not isinstance(block, dict) or block.get("type") != "tool_use":
            return []
        index = _index(message)
        if index is None:
            return []
        self._block_tool[index] = (str(block.get("name", "")), str(block.get("id", "")))
        self._block_input[index] = ""
        return []

    def _block_delta(self, message: dict[str, Any]) -> None:
        delta = message.get("delta")
        if not isinstance(delta, dict) or delta.get("type") != "input_json_delta":
            return
        index = _index(message)
        if index is not None and index in self._block_tool:
            self._block_input[index] = self._block_input.get(index, "") + str(
                delta.get("partial_json", "")
            )

    def _block_stop(self, message: dict[str, Any]) -> list[AgentEvent]:
        index = _index(message)
        if index is None or index not in self._block_tool:
            return []
        name, tool_id = self._block_tool.pop(index)
        raw_input = self._block_input.pop(index, "") or "{}"
        try:
            tool_input = json.loads(raw_input)
        except json.JSONDecodeError:
            tool_input = {}
        if tool_id:
            if tool_id in self._seen_tool_ids:
                return []
            self._seen_tool_ids.add(tool_id)
        return [self._tool_event(name, tool_input if isinstance(tool_input, dict) else {})]

    @staticmethod
    def _tool_event(name: str, tool_input: dict[str, Any]) -> AgentEvent:
        return AgentEvent(
            kind="tool_use",
            payload={"activity": describe_tool_use(name, tool_input)},
            tool_name=name,
            tool_input=tool_input,
        )
