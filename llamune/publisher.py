import json
import logging
from typing import Any, AsyncGenerator, Awaitable, Callable, Dict, Optional

from .llm import ModelStreamError
from .orchestrator import TurnRun


logger = logging.getLogger("uvicorn.error")

DONE_EVENT = "data: [DONE]\n\n"

CommitFn = Callable[[TurnRun], Awaitable[Optional[int]]]


def sse_format(event: Dict[str, Any]) -> str:
    return f"data: {json.dumps(event, ensure_ascii=False)}\n\n"


def error_event(message: str, code: str) -> str:
    return sse_format({"error": message, "code": code})


class TurnPublisher:
    """Turns a TurnRun into SSE lines and commits the answer when it finalizes."""

    def __init__(self, include_model: bool = False):
        self.include_model = include_model
        self.committed_id: Optional[int] = None

    async def publish(self, run: TurnRun, commit: CommitFn) -> AsyncGenerator[str, None]:
        last_payload: Optional[Dict[str, Any]] = None
        try:
            async for frame in run.frames():
                payload = frame.event_payload(model=run.model if self.include_model else None)
                if payload == last_payload:
                    continue
                last_payload = payload
                yield sse_format(payload)
        except ModelStreamError as exc:
            logger.warning("Turn aborted for model %s: %s", run.model, exc)
            yield error_event(str(exc) or "Stream failed", exc.code)
            return
        except Exception as exc:
            logger.exception("Turn failed for model %s", run.model)
            yield error_event(f"Stream failed: {exc}", "INTERNAL_ERROR")
            return
        if not run.finalized:
            return
        try:
            self.committed_id = await commit(run)
        except Exception:
            logger.exception("Failed to save answer for model %s", run.model)
            yield error_event("Failed to save message", "INTERNAL_ERROR")
            return
        yield DONE_EVENT
