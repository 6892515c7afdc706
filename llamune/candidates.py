from dataclasses import dataclass, field
from typing import AsyncGenerator, List, Optional

from .db import MessageLog
from .orchestrator import ToolLoop, build_retry_messages
from .publisher import TurnPublisher
from .schemas import CandidateAction, Message, Session


MAX_CANDIDATES = 8
ACTIONS = ("adopt", "keep", "discard")


class CandidateError(ValueError):
    code = "CANDIDATE_ERROR"


class CandidateSelectionError(CandidateError):
    code = "SELECTION_INCOMPLETE"


class CandidateLimitError(CandidateError):
    code = "CANDIDATE_LIMIT"


class InvalidCandidateIndex(CandidateError):
    code = "INVALID_INDEX"


class NoCandidatesError(CandidateError):
    code = "NO_RETRY_MESSAGES"


@dataclass
class Candidate:
    message: Message
    action: Optional[CandidateAction] = None


@dataclass
class ConfirmResult:
    adopted_id: Optional[int] = None
    kept_ids: List[int] = field(default_factory=list)
    discarded_ids: List[int] = field(default_factory=list)


class CandidateSet:
    """Alternative answers to the latest turn, resolved by adopt/keep/discard.

    Index 0 is the answer the turn originally produced; retries follow in the
    order they were generated. Retry answers live in the log as non-adopted
    entries until the set is confirmed.
    """

    def __init__(self, log: MessageLog, session_id: int, max_candidates: int = MAX_CANDIDATES):
        self.log = log
        self.session_id = session_id
        self.max_candidates = max_candidates
        self.candidates: List[Candidate] = []

    @classmethod
    async def load(cls, log: MessageLog, session_id: int, max_candidates: int = MAX_CANDIDATES) -> "CandidateSet":
        """Rebuild the set from the assistant entries after the last user message."""
        messages = await log.list_messages(session_id)
        last_user = -1
        for index in range(len(messages) - 1, -1, -1):
            if messages[index].role == "user":
                last_user = index
                break
        cset = cls(log, session_id, max_candidates=max_candidates)
        cset.candidates = [Candidate(message=m) for m in messages[last_user + 1 :] if m.role == "assistant"]
        return cset

    def __len__(self) -> int:
        return len(self.candidates)

    @property
    def is_full(self) -> bool:
        return len(self.candidates) >= self.max_candidates

    @property
    def actions(self) -> List[Optional[CandidateAction]]:
        return [c.action for c in self.candidates]

    def begin_comparison(self, original: Message) -> None:
        self.candidates = [Candidate(message=original)]

    def add_candidate(self, message: Message) -> int:
        if self.is_full:
            raise CandidateLimitError(f"At most {self.max_candidates} candidates can be compared")
        self.candidates.append(Candidate(message=message))
        return len(self.candidates) - 1

    async def add_retry(
        self,
        loop: ToolLoop,
        session: Session,
        model: Optional[str] = None,
        publisher: Optional[TurnPublisher] = None,
    ) -> AsyncGenerator[str, None]:
        """Generate another answer for the latest user message and stream it.

        The answer is stored as a non-adopted entry and added to the set once
        the turn finalizes.
        """
        if self.is_full:
            raise CandidateLimitError(f"At most {self.max_candidates} candidates can be compared")
        history = await self.log.list_messages(self.session_id)
        if not any(m.role == "user" for m in history):
            raise NoCandidatesError("No user message to retry")
        messages = build_retry_messages(session, history, loop.executor)
        run = loop.start(model or session.model, messages, session.workspace_root)

        async def commit(finished) -> int:
            answer = Message(
                role="assistant",
                content=finished.content,
                model=finished.model,
                thinking=finished.thinking,
                is_adopted=False,
            )
            answer.id = await self.log.append_message(self.session_id, answer)
            self.add_candidate(answer)
            return answer.id

        async for line in (publisher or TurnPublisher(include_model=True)).publish(run, commit):
            yield line

    def _check_index(self, index: int) -> None:
        if index < 0 or index >= len(self.candidates):
            raise InvalidCandidateIndex(
                f"Invalid index: {index}. Valid range: 0-{len(self.candidates) - 1}"
            )

    def set_action(self, index: int, action: Optional[CandidateAction]) -> None:
        self._check_index(index)
        if action is not None and action not in ACTIONS:
            raise CandidateError(f"Unknown action: {action}")
        if action == "adopt":
            for candidate in self.candidates:
                if candidate.action == "adopt":
                    candidate.action = None
        self.candidates[index].action = action

    def can_confirm(self) -> bool:
        if not self.candidates:
            return False
        if any(c.action is None for c in self.candidates):
            return False
        return sum(1 for c in self.candidates if c.action == "adopt") == 1

    async def confirm(self) -> ConfirmResult:
        if not self.candidates:
            raise NoCandidatesError("No candidates to confirm")
        if any(c.action is None for c in self.candidates):
            raise CandidateSelectionError("Every candidate needs an action before confirming")
        if sum(1 for c in self.candidates if c.action == "adopt") != 1:
            raise CandidateSelectionError("Exactly one candidate must be adopted")

        result = ConfirmResult()
        for candidate in self.candidates:
            message = candidate.message
            if candidate.action == "discard":
                if message.id is not None:
                    await self.log.delete_message(message.id)
                    result.discarded_ids.append(message.id)
                continue
            adopted = candidate.action == "adopt"
            if message.id is None:
                message.is_adopted = adopted
                message.id = await self.log.append_message(self.session_id, message)
            else:
                await self.log.set_message_adopted(message.id, adopted)
                message.is_adopted = adopted
            if adopted:
                result.adopted_id = message.id
            else:
                result.kept_ids.append(message.id)
        self.candidates = []
        return result

    async def select(self, adopted_index: int, keep_indices: List[int], discard_indices: List[int]) -> ConfirmResult:
        if not self.candidates:
            raise NoCandidatesError("No retry messages found")
        for index in [adopted_index, *keep_indices, *discard_indices]:
            self._check_index(index)
        for candidate in self.candidates:
            candidate.action = None
        for index in keep_indices:
            self.set_action(index, "keep")
        for index in discard_indices:
            self.set_action(index, "discard")
        self.set_action(adopted_index, "adopt")
        return await self.confirm()

    async def _resolve_pair(self, original: CandidateAction, retry: CandidateAction) -> ConfirmResult:
        if len(self.candidates) < 2:
            raise NoCandidatesError("No retry to resolve")
        if len(self.candidates) > 2:
            raise CandidateSelectionError(
                f"{len(self.candidates)} candidates are pending; choose one with select"
            )
        self.set_action(0, original)
        self.set_action(1, retry)
        return await self.confirm()

    async def accept_retry(self) -> ConfirmResult:
        """Adopt the retry answer and discard the original."""
        return await self._resolve_pair("discard", "adopt")

    async def reject_retry(self) -> ConfirmResult:
        """Keep the original answer and discard the retry."""
        return await self._resolve_pair("adopt", "discard")
