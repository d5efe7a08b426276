#!/usr/bin/env python3
"""
Builder/Tester loop: two model roles share one workspace and one shell.

Each iteration the Builder works on the plan (or on the Tester's last
complaints), then a fresh Tester inspects the workspace, runs the program
and answers with a verdict. The loop stops when the verdict starts with the
success token or when the iteration budget runs out.

Usage:
  agent-loop path/to/config.yml "<plan in natural language>"
"""
import logging
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Tuple

import openai

from chat_session import ChatModel, ConversationSession, EventHandler
from fs_shell import CommandShell
from gpt_shell import OpenAIChatModel, build_shell, console_printer, load_config, setup_logging

logger = logging.getLogger(__name__)

DEFAULT_MAX_ITERATIONS = 10
DEFAULT_SUCCESS_TOKEN = "SUCCESS"
FAIL_TOKEN = "FAIL"


@dataclass
class PlanOutcome:
    success: bool
    iterations: int
    feedback: str
    workspace: Path


def build_builder_instructions(workspace: Path) -> str:
    return f"""
You are the BUILDER. Your goal is to PRODUCE code inside the workspace folder that satisfies the plan.
- The shell is already positioned in {workspace}; keep every file inside it.
- Use mkdir, write, touch, rm, cp, mv and exec. `write` appends one line per call.
- Create the project's manifest and start script, and install dependencies with exec.
- Check that the program starts before handing over to the TESTER: use spawn to start it, then stop.
- Add log output at strategic points to help debugging.
- When you are done, summarise what you built and how to start it.
""".strip()


def build_tester_instructions(success_token: str) -> str:
    return f"""
You are the TESTER. Your job is to MAKE SURE the project in the current folder implements the plan and actually runs.

Mandatory procedure:
1. File map: use 'tree' to list the workspace and 'read' the key files (manifest, entry point, routes, models).
2. Dependencies and scripts: check the manifest declares a start script. Install dependencies with 'exec' if they are missing. If there is no manifest, the verdict is {FAIL_TOKEN}.
3. Run: start the program with 'spawn' (never with 'exec', it would block).
4. Functional probe: issue ONE request or invocation against the running program, for example 'exec curl -s --max-time 5 http://localhost:3000/'. Expect a successful status or valid output.
5. Shutdown: call 'stop' so the port is released, and read the output it returns.
6. Verdict:
   - Answer exactly {success_token} (uppercase, nothing else) only when every step above passed.
   - Otherwise answer {FAIL_TOKEN} followed by a line break and the problems found (console errors, missing route, missing dependency, ...).
""".strip()


def parse_verdict(text: str, success_token: str = DEFAULT_SUCCESS_TOKEN) -> Tuple[bool, str]:
    """Return (passed, feedback). Feedback drops a leading FAIL marker line."""
    stripped = (text or "").strip()
    if stripped.startswith(success_token):
        return True, ""
    lines = stripped.splitlines()
    if lines and lines[0].strip().upper().rstrip(":") == FAIL_TOKEN:
        lines = lines[1:]
    feedback = "\n".join(lines).strip()
    return False, feedback or "Unknown failure"


class AgentOrchestrator:
    def __init__(
            self,
            model: ChatModel,
            shell: CommandShell,
            workspace: str = "resultados",
            *,
            max_iterations: int = DEFAULT_MAX_ITERATIONS,
            success_token: str = DEFAULT_SUCCESS_TOKEN,
            on_event: Optional[EventHandler] = None,
    ):
        if max_iterations < 1:
            raise ValueError("max_iterations must be at least 1")
        self.model = model
        self.shell = shell
        self.workspace = workspace
        self.max_iterations = max_iterations
        self.success_token = success_token
        self.on_event = on_event
        self._workspace_path: Optional[Path] = None

    def prepare_workspace(self) -> Path:
        if self._workspace_path is None:
            self.shell.dispatch("mkdir", {"path": self.workspace})
            self._workspace_path = Path(self.shell.dispatch("cd", {"path": self.workspace}))
            logger.info("Workspace ready at %s", self._workspace_path)
        return self._workspace_path

    def _session(self, role: str, system_prompt: str) -> ConversationSession:
        return ConversationSession(self.model, self.shell, system_prompt, role=role, on_event=self.on_event)

    def _stop_background(self, role: str) -> None:
        stopped = self.shell.stop_all()
        if stopped:
            logger.info("Stopped background processes left by the %s:\n%s", role, stopped)

    def run(self, plan: str) -> PlanOutcome:
        workspace = self.prepare_workspace()
        feedback = ""
        for iteration in range(1, self.max_iterations + 1):
            logger.info("Iteration %d/%d", iteration, self.max_iterations)
            print(f"\n===== ITERATION {iteration} =====")

            if iteration == 1:
                builder_input = f"Main plan:\n{plan}"
            else:
                builder_input = f"Problems reported by the tester, fix them:\n{feedback}"
            builder = self._session("builder", build_builder_instructions(workspace))
            try:
                builder_reply = builder.run_turn(builder_input)
            finally:
                self._stop_background("builder")
            print("Builder ->\n" + builder_reply.strip())

            tester = self._session("tester", build_tester_instructions(self.success_token))
            try:
                tester_reply = tester.run_turn("Test the project in the current folder.")
            finally:
                self._stop_background("tester")
            print("Tester ->\n" + tester_reply.strip())

            passed, feedback = parse_verdict(tester_reply, self.success_token)
            if passed:
                print("\nProject finished without errors.")
                return PlanOutcome(success=True, iterations=iteration, feedback="", workspace=workspace)

        logger.warning("Iteration limit reached without a %s verdict", self.success_token)
        print("\nIteration limit reached.")
        return PlanOutcome(success=False, iterations=self.max_iterations, feedback=feedback, workspace=workspace)


def main(argv: Optional[List[str]] = None) -> int:
    argv = sys.argv[1:] if argv is None else argv
    if len(argv) < 2 or not argv[1].strip():
        print('Usage: agent-loop path/to/config.yml "<plan in natural language>"')
        return 2

    cfg = load_config(argv[0])
    setup_logging(cfg.log_level)
    shell = build_shell(cfg)
    orchestrator = AgentOrchestrator(
        OpenAIChatModel.from_config(cfg),
        shell,
        cfg.workspace,
        max_iterations=cfg.max_iterations,
        success_token=cfg.success_token,
        on_event=console_printer(cfg.exec_preview_chars) if cfg.show_tool_calls else None,
    )
    try:
        outcome = orchestrator.run(argv[1])
    except openai.OpenAIError as e:
        logger.error("Model request failed: %s", e)
        print(f"Fatal error: {e}")
        return 1
    finally:
        shell.close()
    return 0 if outcome.success else 1


if __name__ == "__main__":
    raise SystemExit(main())
