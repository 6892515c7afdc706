import logging
from enum import Enum
from typing import Any, AsyncGenerator, Dict, List, Optional, Protocol

from .schemas import Message, Session, StreamFrame, ToolCall
from .tools import ToolExecutor, workspace_prompt


logger = logging.getLogger("uvicorn.error")

MAX_TOOL_ROUNDS = 5


class TurnState(str, Enum):
    STREAMING = "streaming"
    EXECUTING_TOOLS = "executing_tools"
    FINALIZED = "finalized"
    ABORTED = "aborted"


class StreamClient(Protocol):
    def chat_stream(
        self,
        model: str,
        messages: List[Any],
        tools: Optional[List[Dict[str, Any]]] = None,
        options: Optional[Dict[str, Any]] = None,
    ) -> AsyncGenerator[StreamFrame, None]:
        ...


class ToolLoop:
    """Drives one turn: stream, run requested tools, stream again."""

    def __init__(self, client: StreamClient, executor: ToolExecutor, max_tool_rounds: int = MAX_TOOL_ROUNDS):
        self.client = client
        self.executor = executor
        self.max_tool_rounds = max_tool_rounds

    def start(self, model: str, messages: List[Message], workspace_root: Optional[str] = None) -> "TurnRun":
        return TurnRun(self, model, messages, workspace_root)


class TurnRun:
    def __init__(self, loop: ToolLoop, model: str, messages: List[Message], workspace_root: Optional[str]):
        self.loop = loop
        self.model = model
        self.messages: List[Message] = list(messages)
        self.workspace_root = workspace_root
        self.state = TurnState.STREAMING
        self.content = ""
        self.thinking: Optional[str] = None
        self.rounds = 0
        self.model_calls = 0
        self.error: Optional[Exception] = None

    @property
    def finalized(self) -> bool:
        return self.state == TurnState.FINALIZED

    def _execute_tools(self, calls: List[ToolCall]) -> None:
        self.state = TurnState.EXECUTING_TOOLS
        self.rounds += 1
        self.messages.append(Message(role="assistant", content="", tool_calls=calls))
        # One tool message per call, in call order.
        for call in calls:
            logger.info("Executing tool %s %s", call.name, call.arguments)
            if self.workspace_root:
                result = self.loop.executor.execute(self.workspace_root, call.name, call.arguments)
            else:
                result = "Error: No workspace is attached to this conversation."
            logger.info("Tool result (first 200 chars): %s", result[:200])
            self.messages.append(Message(role="tool", content=result))

    async def frames(self) -> AsyncGenerator[StreamFrame, None]:
        """Yield the frames that should be shown to the caller.

        Frames that carry tool calls are held back. Any failure moves the run
        to ABORTED and is re-raised; model failures surface as ModelStreamError.
        """
        tools = self.loop.executor.schemas() if self.workspace_root else None
        shown_content = ""
        shown_thinking: Optional[str] = None
        try:
            while True:
                self.state = TurnState.STREAMING
                self.model_calls += 1
                last = StreamFrame()
                pending: List[ToolCall] = []
                async for frame in self.loop.client.chat_stream(self.model, self.messages, tools=tools):
                    last = frame
                    if frame.tool_calls:
                        pending = list(frame.tool_calls)
                        continue
                    self.content = frame.content
                    self.thinking = frame.thinking
                    if frame.content:
                        shown_content = frame.content
                    if frame.thinking:
                        shown_thinking = frame.thinking
                    yield frame
                if not pending:
                    self.content = last.content
                    self.thinking = last.thinking
                    self.state = TurnState.FINALIZED
                    return
                if self.rounds >= self.loop.max_tool_rounds:
                    logger.warning(
                        "Tool round limit (%s) reached for model %s; finalizing with last content",
                        self.loop.max_tool_rounds,
                        self.model,
                    )
                    # The tool-call frame usually carries no text.
                    self.content = last.content or shown_content
                    self.thinking = last.thinking or shown_thinking
                    self.state = TurnState.FINALIZED
                    yield StreamFrame(content=self.content, thinking=self.thinking, done=True)
                    return
                self._execute_tools(pending)
        except Exception as exc:
            self.state = TurnState.ABORTED
            self.error = exc
            raise


def build_system_prompt(session: Session, executor: ToolExecutor) -> Optional[str]:
    prompt = session.system_prompt or ""
    if session.workspace_root:
        prompt += workspace_prompt(executor.workspace, session.workspace_root)
    return prompt or None


def _context_history(history: List[Message]) -> List[Message]:
    return [m for m in history if m.is_adopted and m.role in ("user", "assistant")]


def build_turn_messages(
    session: Session,
    history: List[Message],
    user_text: str,
    executor: ToolExecutor,
) -> List[Message]:
    messages: List[Message] = []
    system_prompt = build_system_prompt(session, executor)
    if system_prompt:
        messages.append(Message(role="system", content=system_prompt))
    messages.extend(_context_history(history))
    messages.append(Message(role="user", content=user_text))
    return messages


def build_retry_messages(session: Session, history: List[Message], executor: ToolExecutor) -> List[Message]:
    """Context for a retry: everything up to and including the last user message."""
    last_user = -1
    for index in range(len(history) - 1, -1, -1):
        if history[index].role == "user":
            last_user = index
            break
    messages: List[Message] = []
    system_prompt = build_system_prompt(session, executor)
    if system_prompt:
        messages.append(Message(role="system", content=system_prompt))
    messages.extend(_context_history(history[: last_user + 1]))
    return messages
