"""
Tool-call turn taking between a chat model and the command shell.

One ConversationSession owns one message log. run_turn() keeps asking the
model for completions, runs every tool call it requests through the shell
and feeds the results back, until the model answers in plain text.
"""
import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Protocol

from fs_shell import CommandShell
from shell_errors import ProtocolError
from tool_catalog import CATALOG, ToolCatalog

logger = logging.getLogger(__name__)

EventHandler = Callable[[str, Dict[str, Any]], None]


# -----------------------------
# Message model
# -----------------------------

@dataclass(frozen=True)
class ToolCallRequest:
    id: str
    name: str
    raw_arguments: str = "{}"

    @classmethod
    def from_args(cls, id: str, name: str, args: Optional[Dict[str, Any]] = None) -> "ToolCallRequest":
        return cls(id=id, name=name, raw_arguments=json.dumps(args or {}, ensure_ascii=False))

    @classmethod
    def from_openai(cls, call: Any) -> "ToolCallRequest":
        return cls(id=call.id, name=call.function.name, raw_arguments=call.function.arguments or "{}")

    def arguments(self) -> Dict[str, Any]:
        try:
            parsed = json.loads(self.raw_arguments or "{}")
        except json.JSONDecodeError as e:
            raise ProtocolError(f"{self.name}: arguments are not valid JSON ({e.msg})") from None
        if not isinstance(parsed, dict):
            raise ProtocolError(f"{self.name}: arguments must be a JSON object")
        return parsed

    def to_openai(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.raw_arguments},
        }


@dataclass
class Message:
    role: str
    content: str = ""
    tool_calls: List[ToolCallRequest] = field(default_factory=list)
    tool_call_id: Optional[str] = None
    name: Optional[str] = None

    def to_openai(self) -> Dict[str, Any]:
        if self.role == "tool":
            return {"role": "tool", "tool_call_id": self.tool_call_id, "content": self.content}
        if self.role == "assistant" and self.tool_calls:
            return {
                "role": "assistant",
                "content": self.content or None,
                "tool_calls": [c.to_openai() for c in self.tool_calls],
            }
        return {"role": self.role, "content": self.content}


@dataclass
class ModelReply:
    text: str = ""
    tool_calls: List[ToolCallRequest] = field(default_factory=list)


class ChatModel(Protocol):
    def complete(self, log: List[Message], catalog: ToolCatalog) -> ModelReply:
        ...


# -----------------------------
# Session
# -----------------------------

class SessionState(Enum):
    AWAITING_MODEL = "awaiting_model"
    HANDLING_TOOL_CALLS = "handling_tool_calls"
    DONE = "done"


class ConversationSession:
    def __init__(
            self,
            model: ChatModel,
            shell: CommandShell,
            system_prompt: str,
            *,
            catalog: ToolCatalog = CATALOG,
            role: str = "assistant",
            on_event: Optional[EventHandler] = None,
    ):
        self.model = model
        self.shell = shell
        self.catalog = catalog
        self.role = role
        self.on_event = on_event
        self.state = SessionState.AWAITING_MODEL
        self.log: List[Message] = [Message(role="system", content=system_prompt)]

    def _emit(self, kind: str, **payload: Any) -> None:
        if self.on_event is not None:
            self.on_event(kind, {"role": self.role, **payload})

    def run_turn(self, user_text: str) -> str:
        """
        Drive one user turn to a plain-text reply.

        Model failures propagate after the log is rolled back to where it
        stood before the turn, so the session stays usable.
        """
        mark = len(self.log)
        self.log.append(Message(role="user", content=user_text))
        self.state = SessionState.AWAITING_MODEL
        rounds = 0
        try:
            while True:
                reply = self.model.complete(self.log, self.catalog)
                rounds += 1
                if not reply.tool_calls:
                    self.log.append(Message(role="assistant", content=reply.text or ""))
                    self.state = SessionState.DONE
                    self._emit("reply", text=reply.text or "", rounds=rounds)
                    return reply.text or ""

                self.log.append(Message(role="assistant", content=reply.text or "",
                                        tool_calls=list(reply.tool_calls)))
                self.state = SessionState.HANDLING_TOOL_CALLS
                # sequential: later calls may depend on what earlier ones changed
                for call in reply.tool_calls:
                    self.log.append(self._handle_call(call))
                self.state = SessionState.AWAITING_MODEL
        except Exception:
            del self.log[mark:]
            self.state = SessionState.AWAITING_MODEL
            raise

    def _handle_call(self, call: ToolCallRequest) -> Message:
        try:
            args = call.arguments()
            self._emit("tool_call", name=call.name, arguments=args)
            self.catalog.validate(call.name, args)
        except ProtocolError as e:
            logger.info("Rejected tool call %s: %s", call.id, e)
            content = e.render()
            self._emit("tool_result", name=call.name, ok=False, text=content)
            return Message(role="tool", content=content, tool_call_id=call.id, name=call.name)

        result = self.shell.execute(call.name, args)
        self._emit("tool_result", name=call.name, ok=result.ok, text=result.text)
        return Message(role="tool", content=result.render(), tool_call_id=call.id, name=call.name)
