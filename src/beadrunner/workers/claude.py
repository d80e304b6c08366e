from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any

from beadrunner.workers.base import (
    Worker,
    WorkerInvocation,
    WorkerProcess,
    WorkerProcessError,
)

MAX_EVENT_PREVIEW = 200
STREAM_LIMIT = 64 * 1024 * 1024


class ClaudeWorker(Worker):
    def __init__(self, binary: str = "claude", working_directory: Path | None = None) -> None:
        self.binary = binary
        self.working_directory = working_directory

    def build_command(self, invocation: WorkerInvocation) -> list[str]:
        return [
            self.binary,
            "-p",
            invocation.prompt,
            "--output-format",
            "stream-json",
            "--verbose",
            "--model",
            invocation.model,
            *invocation.extra_flags,
            *invocation.permission_flags,
        ]

    async def start(self, invocation: WorkerInvocation) -> WorkerProcess:
        command = self.build_command(invocation)
        try:
            return await asyncio.create_subprocess_exec(
                *command,
                cwd=str(self.working_directory) if self.working_directory else None,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                limit=STREAM_LIMIT,
            )
        except FileNotFoundError as exc:
            raise WorkerProcessError(
                f"Claude binary not found: {self.binary}",
                task_id=invocation.task_id,
                retriable=False,
            ) from exc

    @staticmethod
    def _message_parts(message: Any) -> list[str]:
        if isinstance(message, str):
            return [message]
        if not isinstance(message, dict):
            return []
        content = message.get("content")
        if isinstance(content, str):
            return [content]
        parts: list[str] = []
        if isinstance(content, list):
            for item in content:
                if not isinstance(item, dict):
                    continue
                if item.get("type") == "tool_use" and isinstance(item.get("name"), str):
                    parts.append(f"-> {item['name']}")
                    continue
                text = item.get("text")
                if isinstance(text, str) and text.strip():
                    parts.append(text.strip())
        return parts

    def render_line(self, line: str) -> str | None:
        try:
            event = json.loads(line)
        except json.JSONDecodeError:
            return line
        if not isinstance(event, dict):
            return None
        event_type = event.get("type")
        if not isinstance(event_type, str) or not event_type:
            return None
        if event_type == "assistant":
            return "\n".join(self._message_parts(event.get("message"))) or None
        if event_type == "tool_use":
            tool = event.get("tool") or event.get("name")
            return f"-> {tool}" if isinstance(tool, str) and tool else None
        if event_type == "result":
            result = event.get("result")
            return result if isinstance(result, str) and result else None
        preview = json.dumps(event, ensure_ascii=False, separators=(",", ":"))
        return f"[{event_type}] {preview[:MAX_EVENT_PREVIEW]}"
