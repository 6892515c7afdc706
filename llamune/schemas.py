import json
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator, model_validator


Role = Literal["system", "user", "assistant", "tool"]
CandidateAction = Literal["adopt", "keep", "discard"]


class ToolCall(BaseModel):
    name: str
    arguments: Dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def unwrap_function(cls, data: Any) -> Any:
        # Wire form is {"function": {"name": ..., "arguments": ...}}
        if isinstance(data, dict) and isinstance(data.get("function"), dict):
            return dict(data["function"])
        return data

    @field_validator("arguments", mode="before")
    @classmethod
    def decode_arguments(cls, value: Any) -> Dict[str, Any]:
        if value is None or value == "":
            return {}
        if isinstance(value, str):
            try:
                value = json.loads(value)
            except ValueError:
                return {"_raw": value}
        if not isinstance(value, dict):
            return {"_raw": value}
        return value

    def to_wire(self) -> Dict[str, Any]:
        return {"function": {"name": self.name, "arguments": self.arguments}}


class Message(BaseModel):
    id: Optional[int] = None
    role: Role
    content: str = ""
    model: Optional[str] = None
    thinking: Optional[str] = None
    is_adopted: bool = True
    tool_calls: List[ToolCall] = Field(default_factory=list)
    created_at: Optional[str] = None

    def to_chat(self) -> Dict[str, Any]:
        """Shape sent to the model backend."""
        payload: Dict[str, Any] = {"role": self.role, "content": self.content}
        if self.tool_calls:
            payload["tool_calls"] = [call.to_wire() for call in self.tool_calls]
        return payload


class StreamFrame(BaseModel):
    content: str = ""
    thinking: Optional[str] = None
    tool_calls: List[ToolCall] = Field(default_factory=list)
    done: bool = False

    def event_payload(self, model: Optional[str] = None) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"content": self.content, "done": self.done}
        if self.thinking:
            payload["thinking"] = self.thinking
        if model:
            payload["model"] = model
        return payload


class Session(BaseModel):
    id: int
    title: Optional[str] = None
    model: str
    system_prompt: Optional[str] = None
    workspace_root: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class CreateSessionRequest(BaseModel):
    model: Optional[str] = None
    title: Optional[str] = None
    system_prompt: Optional[str] = None
    workspace_root: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def normalize_inputs(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        # Older clients send camelCase keys.
        if "projectPath" in data and "workspace_root" not in data:
            data["workspace_root"] = data.pop("projectPath")
        if "systemPrompt" in data and "system_prompt" not in data:
            data["system_prompt"] = data.pop("systemPrompt")
        root = data.get("workspace_root")
        if isinstance(root, str) and not root.strip():
            data["workspace_root"] = None
        return data


class UpdateSessionRequest(BaseModel):
    title: Optional[str] = None
    model: Optional[str] = None
    system_prompt: Optional[str] = None
    workspace_root: Optional[str] = None


class SendRequest(BaseModel):
    session_id: int
    message: str
    model: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def normalize_inputs(cls, data: Any) -> Any:
        if isinstance(data, dict) and "sessionId" in data and "session_id" not in data:
            data["session_id"] = data.pop("sessionId")
        return data


class RetryRequest(BaseModel):
    session_id: int
    model: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def normalize_inputs(cls, data: Any) -> Any:
        if isinstance(data, dict) and "sessionId" in data and "session_id" not in data:
            data["session_id"] = data.pop("sessionId")
        return data


class RetryDecisionRequest(BaseModel):
    session_id: int

    @model_validator(mode="before")
    @classmethod
    def normalize_inputs(cls, data: Any) -> Any:
        if isinstance(data, dict) and "sessionId" in data and "session_id" not in data:
            data["session_id"] = data.pop("sessionId")
        return data


class SelectRequest(BaseModel):
    session_id: int
    adopted_index: int
    keep_indices: List[int] = Field(default_factory=list)
    discard_indices: List[int] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def normalize_inputs(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        renames = {
            "sessionId": "session_id",
            "adoptedIndex": "adopted_index",
            "keepIndices": "keep_indices",
            "discardIndices": "discard_indices",
        }
        for old, new in renames.items():
            if old in data and new not in data:
                data[new] = data.pop(old)
        return data
