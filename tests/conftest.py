"""Shared fixtures: a shell rooted in tmp_path and a scripted chat model."""

from typing import Any, Dict, List, Optional, Tuple

import pytest

from chat_session import Message, ModelReply, ToolCallRequest
from fs_shell import CommandShell, ShellSession


class ScriptedModel:
    """Fake model collaborator that replays a fixed list of replies.

    Every call records the log it was given (as wire dicts) so tests can
    inspect what the model saw. An Exception in the script is raised.
    """

    def __init__(self, replies: List[Any]):
        self.replies = list(replies)
        self.calls: List[List[Dict[str, Any]]] = []

    def complete(self, log: List[Message], catalog) -> ModelReply:
        self.calls.append([m.to_openai() for m in log])
        if not self.replies:
            raise AssertionError("model called more times than scripted")
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply


def text_reply(text: str) -> ModelReply:
    return ModelReply(text=text)


def tool_reply(*calls: Tuple[str, Optional[Dict[str, Any]]], prefix: str = "call") -> ModelReply:
    return ModelReply(tool_calls=[
        ToolCallRequest.from_args(f"{prefix}_{i}", name, args) for i, (name, args) in enumerate(calls)
    ])


def assert_tool_pairing(log: List[Dict[str, Any]]) -> None:
    """Every assistant tool request is answered, in order, right after it."""
    for i, msg in enumerate(log):
        if msg["role"] == "assistant" and msg.get("tool_calls"):
            ids = [c["id"] for c in msg["tool_calls"]]
            answers = log[i + 1:i + 1 + len(ids)]
            assert [a["role"] for a in answers] == ["tool"] * len(ids)
            assert [a["tool_call_id"] for a in answers] == ids


@pytest.fixture
def shell(tmp_path):
    sh = CommandShell(ShellSession(tmp_path), timeout_seconds=5)
    yield sh
    sh.close()
