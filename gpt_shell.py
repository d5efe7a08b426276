#!/usr/bin/env python3
"""
Natural-language shell: the model decides when to call the mini-shell commands.

Requires:
  pip install openai pyyaml requests

Usage:
  gpt-shell path/to/config.yml          # chat, type 'exit' to quit
  gpt-shell path/to/config.yml --raw    # type shell commands directly
"""
import logging
import os
import platform
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

import openai
import yaml
from openai import OpenAI

from chat_session import ConversationSession, EventHandler, Message, ModelReply, ToolCallRequest
from fs_shell import (
    DEFAULT_FETCH_PREVIEW_BYTES,
    DEFAULT_MAX_OUTPUT_BYTES,
    DEFAULT_TIMEOUT_SECONDS,
    CommandShell,
    SafetyPolicy,
    ShellSession,
)
from tool_catalog import ToolCatalog

logger = logging.getLogger(__name__)


# -----------------------------
# Config
# -----------------------------

@dataclass
class AppConfig:
    api_key: str
    base_url: Optional[str]
    model: str
    reasoning_effort: Optional[str]
    timeout_seconds: float
    max_output_bytes: int
    fetch_preview_bytes: int
    fetch_timeout_seconds: float
    exec_preview_chars: int
    workdir: Optional[str]
    workspace: str
    max_iterations: int
    success_token: str
    browser: Optional[str]
    env: Dict[str, str]
    log_level: str
    show_tool_calls: bool
    denylist_regex: List[str]
    allowlist_prefixes: List[str]
    require_allowlist: bool
    allow_fallback: bool


def load_config(path: str) -> AppConfig:
    data = yaml.safe_load(Path(path).read_text(encoding="utf-8")) or {}
    openai_cfg = data.get("openai", {}) or {}
    agent_cfg = data.get("agent", {}) or {}
    safety_cfg = data.get("safety", {}) or {}

    api_key = openai_cfg.get("api_key") or os.environ.get("OPENAI_API_KEY")
    if not api_key:
        raise ValueError("Missing OpenAI API key (set openai.api_key or OPENAI_API_KEY).")

    return AppConfig(
        api_key=api_key,
        base_url=openai_cfg.get("base_url"),
        model=openai_cfg.get("model", "gpt-4o-mini"),
        reasoning_effort=eval_reasoning_effort(openai_cfg.get("reasoning_effort")),
        timeout_seconds=float(agent_cfg.get("timeout_seconds", DEFAULT_TIMEOUT_SECONDS)),
        max_output_bytes=int(agent_cfg.get("max_output_bytes", DEFAULT_MAX_OUTPUT_BYTES)),
        fetch_preview_bytes=int(agent_cfg.get("fetch_preview_bytes", DEFAULT_FETCH_PREVIEW_BYTES)),
        fetch_timeout_seconds=float(agent_cfg.get("fetch_timeout_seconds", DEFAULT_TIMEOUT_SECONDS)),
        exec_preview_chars=int(agent_cfg.get("exec_preview_chars", 2048)),
        workdir=agent_cfg.get("workdir"),
        workspace=str(agent_cfg.get("workspace", "resultados")),
        max_iterations=int(agent_cfg.get("max_iterations", 10)),
        success_token=str(agent_cfg.get("success_token", "SUCCESS")),
        browser=agent_cfg.get("browser"),
        env={str(k): str(v) for k, v in (agent_cfg.get("env", {}) or {}).items()},
        log_level=str(agent_cfg.get("log_level", "WARNING")).upper(),
        show_tool_calls=bool(agent_cfg.get("show_tool_calls", True)),
        denylist_regex=list(safety_cfg.get("denylist_regex", []) or []),
        allowlist_prefixes=list(safety_cfg.get("allowlist_prefixes", []) or []),
        require_allowlist=bool(safety_cfg.get("require_allowlist", False)),
        allow_fallback=bool(safety_cfg.get("allow_fallback", True)),
    )


def eval_reasoning_effort(effort: Optional[str]) -> Optional[str]:
    """None means the parameter is not sent (models without reasoning reject it)."""
    if not effort:
        return None
    effort_lower = str(effort).lower()
    if effort_lower in ("none", "minimal", "low", "medium", "high", "xhigh"):
        return effort_lower
    return "low"  # Default to low if unrecognized


def setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level, logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def build_shell(cfg: AppConfig) -> CommandShell:
    session = ShellSession(Path(cfg.workdir).expanduser().resolve()) if cfg.workdir else ShellSession()
    return CommandShell(
        session,
        timeout_seconds=cfg.timeout_seconds,
        max_output_bytes=cfg.max_output_bytes,
        fetch_preview_bytes=cfg.fetch_preview_bytes,
        fetch_timeout_seconds=cfg.fetch_timeout_seconds,
        env=cfg.env,
        safety=SafetyPolicy(
            denylist_regex=cfg.denylist_regex,
            allowlist_prefixes=cfg.allowlist_prefixes,
            require_allowlist=cfg.require_allowlist,
            allow_fallback=cfg.allow_fallback,
        ),
        browser=cfg.browser,
    )


# -----------------------------
# Model I/O (chat completions + tools)
# -----------------------------

class OpenAIChatModel:
    def __init__(self, client: OpenAI, model: str, reasoning_effort: Optional[str] = None):
        self.client = client
        self.model = model
        self.reasoning_effort = reasoning_effort

    @classmethod
    def from_config(cls, cfg: AppConfig) -> "OpenAIChatModel":
        client_kwargs: Dict[str, Any] = {"api_key": cfg.api_key}
        if cfg.base_url:
            client_kwargs["base_url"] = cfg.base_url
        return cls(OpenAI(**client_kwargs), cfg.model, cfg.reasoning_effort)

    def complete(self, log: List[Message], catalog: ToolCatalog) -> ModelReply:
        kwargs: Dict[str, Any] = {}
        if self.reasoning_effort:
            kwargs["reasoning_effort"] = self.reasoning_effort
        resp = self.client.chat.completions.create(
            model=self.model,
            messages=[m.to_openai() for m in log],
            tools=catalog.to_openai(),
            tool_choice="auto",
            **kwargs,
        )
        message = resp.choices[0].message
        calls = [ToolCallRequest.from_openai(c) for c in (message.tool_calls or []) if c.type == "function"]
        return ModelReply(text=message.content or "", tool_calls=calls)


def build_system_instructions(shell_name: str) -> str:
    return f"""
You are a command-line assistant working inside a small file-system shell.

Rules:
- When the user's request needs it, call the provided functions to navigate, create folders and files, write, read, copy, move or remove them, fetch URLs and run system commands.
- Functions run one after another in the order you issue them, so you may create a directory and write into it in the same step.
- `write` appends one line per call; call it repeatedly to build up a file.
- Use `exec` for commands that finish on their own and `spawn`/`stop` for servers or anything long-running.
- System commands run under "{shell_name}" on {platform.system()} with a time limit.
- If a function returns a line starting with "Error:", read it, then retry differently or ask the user.
- Briefly tell the user what you did.
""".strip()


# -----------------------------
# UI / Loop
# -----------------------------

def clip_text(s: str, limit: int) -> str:
    if not s:
        return ""
    if len(s) <= limit:
        return s
    return s[:limit] + "\n...[truncated]"


def console_printer(preview_chars: int) -> EventHandler:
    def on_event(kind: str, payload: Dict[str, Any]) -> None:
        if kind == "tool_call":
            args = " ".join(f"{k}={v!r}" for k, v in payload["arguments"].items())
            print(f"  [{payload['role']}] {payload['name']} {args}".rstrip())
        elif kind == "tool_result":
            text = clip_text(payload["text"].rstrip(), preview_chars)
            if text:
                print("    " + text.replace("\n", "\n    "))
    return on_event


def raw_loop(shell: CommandShell) -> int:
    print("Raw mode: type 'help' for commands, 'exit' to quit.")
    while True:
        try:
            line = input(f"{shell.cwd}$ ")
        except EOFError:
            return 0
        if line.strip().lower() == "exit":
            return 0
        result = shell.run_line(line)
        if result.text:
            print(result.render().rstrip("\n"))


def chat_loop(session: ConversationSession) -> int:
    print("Enter a request ('exit' to quit).")
    while True:
        try:
            line = input("\n> ").strip()
        except EOFError:
            return 0
        if line.lower() == "exit":
            return 0
        if not line:
            continue
        try:
            answer = session.run_turn(line)
        except openai.OpenAIError as e:
            logger.error("Model request failed: %s", e)
            print(f"Model request failed: {e}")
            continue
        print(answer.strip())


def main(argv: Optional[List[str]] = None) -> int:
    argv = sys.argv[1:] if argv is None else argv
    if not argv:
        print("Usage: gpt-shell path/to/config.yml [--raw]")
        return 2

    cfg = load_config(argv[0])
    setup_logging(cfg.log_level)
    shell = build_shell(cfg)
    print(f"Shell detected: {shell.shell_name}")
    print(f"Working directory: {shell.cwd}")

    try:
        if "--raw" in argv[1:]:
            return raw_loop(shell)
        session = ConversationSession(
            OpenAIChatModel.from_config(cfg),
            shell,
            build_system_instructions(shell.shell_name),
            role="shell",
            on_event=console_printer(cfg.exec_preview_chars) if cfg.show_tool_calls else None,
        )
        return chat_loop(session)
    finally:
        shell.close()


if __name__ == "__main__":
    raise SystemExit(main())
