import json
import logging
from typing import Any, AsyncGenerator, Dict, List, Optional

import httpx

from .schemas import Message, StreamFrame, ToolCall
from .thinking import merge_thinking, split_thinking


logger = logging.getLogger("uvicorn.error")

ALLOWED_ROLES = {"system", "user", "assistant", "tool"}


class ModelStreamError(RuntimeError):
    """A model call failed; the turn cannot be committed."""

    code = "STREAM_ERROR"


class ModelTransportError(ModelStreamError):
    """The backend could not be reached or rejected the call before streaming."""

    code = "MODEL_UNAVAILABLE"


class ModelStreamInterrupted(ModelStreamError):
    """The stream broke off after frames were already produced."""

    code = "STREAM_ERROR"


def format_size(size_bytes: Optional[float]) -> str:
    units = ["B", "KB", "MB", "GB", "TB"]
    size = float(size_bytes or 0)
    unit_index = 0
    while size >= 1024 and unit_index < len(units) - 1:
        size /= 1024
        unit_index += 1
    return f"{size:.1f} {units[unit_index]}"


def _parse_tool_calls(raw: Any) -> List[ToolCall]:
    if not isinstance(raw, list):
        return []
    calls: List[ToolCall] = []
    for item in raw:
        try:
            calls.append(ToolCall.model_validate(item))
        except ValueError:
            continue
    return calls


class OllamaClient:
    def __init__(self, base_url: str, timeout: Optional[float] = None):
        self.base_url = base_url.rstrip("/")
        # timeout=None leaves the read timeout off for long generations.
        self.client = httpx.AsyncClient(timeout=httpx.Timeout(timeout, connect=10.0))

    async def list_models(self) -> List[Dict[str, Any]]:
        resp = await self.client.get(f"{self.base_url}/api/tags")
        resp.raise_for_status()
        data = resp.json()
        models = data.get("models") if isinstance(data, dict) else None
        return list(models or [])

    def _sanitize_messages(self, messages: Any) -> List[Dict[str, Any]]:
        if not isinstance(messages, list):
            return []
        sanitized: List[Dict[str, Any]] = []
        for msg in messages:
            if isinstance(msg, Message):
                msg = msg.to_chat()
            if not isinstance(msg, dict):
                continue
            role = msg.get("role")
            if role not in ALLOWED_ROLES:
                continue
            content = msg.get("content")
            if content is None:
                content = ""
            if not isinstance(content, str):
                content = json.dumps(content, ensure_ascii=False)
            tool_calls = msg.get("tool_calls") or []
            if not content.strip() and not tool_calls and role != "tool":
                continue
            entry: Dict[str, Any] = {"role": role, "content": content}
            if tool_calls:
                entry["tool_calls"] = tool_calls
            sanitized.append(entry)
        return sanitized

    def _extract_error_detail(self, response: httpx.Response) -> str:
        try:
            data = response.json()
            if isinstance(data, dict) and data.get("error"):
                return str(data["error"])
        except ValueError:
            pass
        try:
            return response.text or response.reason_phrase
        except httpx.ResponseNotRead:
            return response.reason_phrase

    async def chat(
        self,
        model: str,
        messages: List[Any],
        options: Optional[Dict[str, Any]] = None,
    ) -> str:
        payload: Dict[str, Any] = {
            "model": model,
            "messages": self._sanitize_messages(messages),
            "stream": False,
        }
        if options:
            payload["options"] = options
        try:
            resp = await self.client.post(f"{self.base_url}/api/chat", json=payload)
        except httpx.HTTPError as exc:
            raise ModelTransportError(f"Chat failed: {exc}") from exc
        if resp.status_code >= 400:
            raise ModelTransportError(f"Chat failed: HTTP {resp.status_code}: {self._extract_error_detail(resp)}")
        data = resp.json()
        message = data.get("message") if isinstance(data, dict) else None
        return str((message or {}).get("content") or "")

    async def chat_stream(
        self,
        model: str,
        messages: List[Any],
        tools: Optional[List[Dict[str, Any]]] = None,
        options: Optional[Dict[str, Any]] = None,
    ) -> AsyncGenerator[StreamFrame, None]:
        """Stream one chat call as cumulative frames.

        Each NDJSON record adds to the running content/thinking text; the
        latest tool call list is repeated on every later frame. Records that
        do not parse are skipped. The generator ends after the `done` record.
        """
        payload: Dict[str, Any] = {
            "model": model,
            "messages": self._sanitize_messages(messages),
            "stream": True,
        }
        if options:
            payload["options"] = options
        if tools:
            payload["tools"] = tools
        url = f"{self.base_url}/api/chat"

        raw_content = ""
        backend_thinking = ""
        tool_calls: List[ToolCall] = []
        buffer = ""
        started = False
        finished = False

        def parse_line(line: str) -> Optional[StreamFrame]:
            nonlocal raw_content, backend_thinking, tool_calls, finished
            if not line.strip():
                return None
            try:
                data = json.loads(line)
            except ValueError:
                return None
            if not isinstance(data, dict):
                return None
            if data.get("error"):
                raise ModelStreamInterrupted(str(data["error"]))
            message = data.get("message") or {}
            if not isinstance(message, dict):
                return None
            chunk_content = message.get("content") or ""
            chunk_thinking = message.get("thinking") or ""
            if isinstance(chunk_content, str):
                raw_content += chunk_content
            if isinstance(chunk_thinking, str):
                backend_thinking += chunk_thinking
            calls = _parse_tool_calls(message.get("tool_calls"))
            if calls:
                tool_calls = calls
            done = bool(data.get("done"))
            content, extracted = split_thinking(raw_content, final=done)
            if done:
                finished = True
            return StreamFrame(
                content=content,
                thinking=merge_thinking(backend_thinking, extracted),
                tool_calls=list(tool_calls),
                done=done,
            )

        try:
            async with self.client.stream("POST", url, json=payload) as resp:
                if resp.status_code >= 400:
                    await resp.aread()
                    detail = self._extract_error_detail(resp)
                    raise ModelTransportError(f"Chat stream failed: HTTP {resp.status_code}: {detail}")
                started = True
                async for text in resp.aiter_text():
                    buffer += text
                    lines = buffer.split("\n")
                    buffer = lines.pop()
                    for line in lines:
                        frame = parse_line(line)
                        if frame is None:
                            continue
                        yield frame
                        if finished:
                            return
                frame = parse_line(buffer)
                if frame is not None:
                    yield frame
        except (httpx.HTTPError, httpx.StreamError) as exc:
            if not started:
                raise ModelTransportError(f"Chat stream failed: {exc}") from exc
            raise ModelStreamInterrupted(f"Chat stream interrupted: {exc}") from exc
        if not finished:
            raise ModelStreamInterrupted("Chat stream ended before completion")

    async def close(self) -> None:
        await self.client.aclose()
