from typing import AsyncGenerator, Optional

from .candidates import MAX_CANDIDATES, CandidateSet
from .db import MessageLog
from .orchestrator import ToolLoop, TurnRun, build_turn_messages
from .publisher import TurnPublisher
from .schemas import Message, Session


class ChatService:
    """Wires the tool loop, publisher and candidate set to one message log."""

    def __init__(self, log: MessageLog, loop: ToolLoop, max_candidates: int = MAX_CANDIDATES):
        self.log = log
        self.loop = loop
        self.max_candidates = max_candidates

    async def send(self, session: Session, text: str, model: Optional[str] = None) -> AsyncGenerator[str, None]:
        history = await self.log.list_messages(session.id)
        messages = build_turn_messages(session, history, text, self.loop.executor)
        run = self.loop.start(model or session.model, messages, session.workspace_root)

        async def commit(finished: TurnRun) -> int:
            # User and assistant messages land together, only after finalize.
            await self.log.append_message(session.id, Message(role="user", content=text))
            return await self.log.append_message(
                session.id,
                Message(
                    role="assistant",
                    content=finished.content,
                    model=finished.model,
                    thinking=finished.thinking,
                ),
            )

        async for line in TurnPublisher().publish(run, commit):
            yield line

    async def candidates(self, session_id: int) -> CandidateSet:
        return await CandidateSet.load(self.log, session_id, max_candidates=self.max_candidates)
