"""
Stateful command interpreter behind the model's tool calls.

Usage:
    shell = CommandShell()
    shell.dispatch("mkdir", {"path": "build"})
    print(shell.run_line("ls").render())

Every command runs against a ShellSession (the current directory). Structured
calls go through dispatch()/execute(); human-typed lines go through run_line().
"""
import logging
import os
import platform
import re
import shlex
import shutil
import signal
import subprocess
import tempfile
import threading
import time
import webbrowser
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

import requests

from shell_errors import (
    CommandTimeoutError,
    NetworkError,
    NotFoundError,
    PermissionDeniedError,
    ProtocolError,
    ShellError,
    SubprocessError,
    UsageError,
    from_os_error,
)
from tool_catalog import CATALOG, ToolCatalog, ToolSpec

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30
DEFAULT_MAX_OUTPUT_BYTES = 10 * 1024 * 1024
DEFAULT_FETCH_PREVIEW_BYTES = 1024
SPAWN_TAIL_BYTES = 2048
_READ_CHUNK = 64 * 1024


# -----------------------------
# Host shell
# -----------------------------

def detect_shell() -> Tuple[str, List[str]]:
    sysname = platform.system().lower()
    if "windows" in sysname:
        # PowerShell
        return ("powershell", ["powershell", "-NoProfile", "-ExecutionPolicy", "Bypass", "-Command"])
    if shutil.which("bash"):
        return ("bash", ["bash", "-c"])
    return ("sh", ["/bin/sh", "-c"])


def _kill_tree(proc: subprocess.Popen, sig: int = getattr(signal, "SIGKILL", signal.SIGTERM)) -> None:
    if proc.poll() is not None and os.name != "posix":
        return
    try:
        if os.name == "posix":
            os.killpg(proc.pid, sig)
        else:
            proc.kill()
    except (ProcessLookupError, PermissionError):
        pass


# -----------------------------
# Safety checks
# -----------------------------

def is_denied(command: str, denylist_regex: List[str]) -> Optional[str]:
    for pattern in denylist_regex:
        if re.search(pattern, command, flags=re.IGNORECASE):
            return pattern
    return None


def is_allowed_by_prefix(command: str, allowlist_prefixes: List[str]) -> bool:
    if not allowlist_prefixes:
        return True
    stripped = command.lstrip()
    return any(stripped.startswith(pfx) for pfx in allowlist_prefixes)


@dataclass
class SafetyPolicy:
    denylist_regex: List[str] = field(default_factory=list)
    allowlist_prefixes: List[str] = field(default_factory=list)
    require_allowlist: bool = False
    allow_fallback: bool = True

    def check(self, command: str) -> None:
        denied_by = is_denied(command, self.denylist_regex)
        if denied_by:
            logger.warning("Blocked command %r (denylist %r)", command, denied_by)
            raise PermissionDeniedError(f"blocked by safety policy (matched denylist regex: {denied_by})")
        if self.require_allowlist and not is_allowed_by_prefix(command, self.allowlist_prefixes):
            logger.warning("Blocked command %r (not in allowlist)", command)
            raise PermissionDeniedError("blocked by safety policy (not in allowlist prefixes)")


# -----------------------------
# Session / results
# -----------------------------

@dataclass
class ShellSession:
    cwd: Path = field(default_factory=Path.cwd)

    def resolve(self, path: str) -> Path:
        return Path(os.path.normpath(os.path.join(self.cwd, os.path.expanduser(path))))


@dataclass
class CommandResult:
    ok: bool
    text: str
    error: Optional[ShellError] = None

    @classmethod
    def failure(cls, error: ShellError) -> "CommandResult":
        return cls(ok=False, text=error.render(), error=error)

    def render(self) -> str:
        return self.text


@dataclass
class _Spawned:
    proc: subprocess.Popen
    command: str
    log_path: Path


def flatten_call(name: str, args: Optional[Dict[str, Any]] = None) -> str:
    """Display form of a structured call: True -> --flag, False dropped, rest stringified."""
    parts = [name]
    for key, value in (args or {}).items():
        if isinstance(value, bool):
            if value:
                parts.append(f"--{key}")
        elif value is not None:
            parts.append(str(value))
    return " ".join(parts)


def _tail(path: Path, limit: int) -> str:
    try:
        with open(path, "rb") as fh:
            fh.seek(0, os.SEEK_END)
            size = fh.tell()
            fh.seek(max(0, size - limit))
            return fh.read().decode("utf-8", errors="replace")
    except OSError:
        return ""


# -----------------------------
# Interpreter
# -----------------------------

class CommandShell:
    def __init__(
            self,
            session: Optional[ShellSession] = None,
            *,
            catalog: ToolCatalog = CATALOG,
            timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
            max_output_bytes: int = DEFAULT_MAX_OUTPUT_BYTES,
            fetch_preview_bytes: int = DEFAULT_FETCH_PREVIEW_BYTES,
            fetch_timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
            env: Optional[Dict[str, str]] = None,
            safety: Optional[SafetyPolicy] = None,
            browser: Optional[str] = None,
    ):
        self.session = session or ShellSession()
        self.catalog = catalog
        self.timeout_seconds = timeout_seconds
        self.max_output_bytes = max_output_bytes
        self.fetch_preview_bytes = fetch_preview_bytes
        self.fetch_timeout_seconds = fetch_timeout_seconds
        self.env = dict(env or {})
        self.safety = safety or SafetyPolicy()
        self.browser = browser
        self.shell_name, self.shell_prefix = detect_shell()
        self._spawned: Dict[int, _Spawned] = {}
        self._handlers: Dict[str, Callable[..., str]] = {
            "help": self._cmd_help,
            "pwd": self._cmd_pwd,
            "cd": self._cmd_cd,
            "ls": self._cmd_ls,
            "tree": self._cmd_tree,
            "mkdir": self._cmd_mkdir,
            "touch": self._cmd_touch,
            "write": self._cmd_write,
            "read": self._cmd_read,
            "rm": self._cmd_rm,
            "cp": self._cmd_cp,
            "mv": self._cmd_mv,
            "fetch": self._cmd_fetch,
            "exec": self._cmd_exec,
            "spawn": self._cmd_spawn,
            "stop": self._cmd_stop,
            "chrome": self._cmd_chrome,
        }
        drift = set(self.catalog.names()) ^ set(self._handlers)
        if drift:
            raise RuntimeError(f"Tool catalog and shell commands disagree: {', '.join(sorted(drift))}")

    @property
    def cwd(self) -> Path:
        return self.session.cwd

    def command_names(self) -> List[str]:
        return list(self._handlers)

    # ---- entry points ----

    def dispatch(self, name: str, args: Optional[Dict[str, Any]] = None,
                 session: Optional[ShellSession] = None) -> str:
        """Run one structured call. Raises a ShellError subclass on failure."""
        if name not in self._handlers:
            raise ProtocolError(f"Unknown command: {name}")
        kwargs = {k: v for k, v in (args or {}).items() if v is not None}
        self.catalog.validate(name, kwargs)
        logger.debug("dispatch: %s", flatten_call(name, kwargs))
        try:
            return self._handlers[name](session or self.session, **kwargs)
        except OSError as e:
            raise from_os_error(e) from e

    def execute(self, name: str, args: Optional[Dict[str, Any]] = None,
                session: Optional[ShellSession] = None) -> CommandResult:
        """Like dispatch(), but every failure comes back as a CommandResult."""
        try:
            return CommandResult(ok=True, text=self.dispatch(name, args, session))
        except ShellError as e:
            logger.debug("%s failed: %s", name, e.render())
            return CommandResult.failure(e)
        except Exception as e:
            logger.exception("Unexpected failure in command %r", name)
            return CommandResult.failure(ShellError(f"{type(e).__name__}: {e}"))

    def run_line(self, line: str, session: Optional[ShellSession] = None) -> CommandResult:
        if not line.strip():
            return CommandResult(ok=True, text="")
        try:
            name, args = self.parse_line(line)
        except ShellError as e:
            return CommandResult.failure(e)
        if name is None:
            try:
                return CommandResult(ok=True, text=self._run_fallback(line, session or self.session))
            except ShellError as e:
                return CommandResult.failure(e)
        return self.execute(name, args, session)

    def parse_line(self, line: str) -> Tuple[Optional[str], Dict[str, Any]]:
        """
        Split a typed command line into (name, args).

        Tokens starting with '-' select the command's boolean switches
        ('-rf' -> recursive + force, '--force' -> force); the remaining tokens
        fill positional parameters in order, the last one absorbing any extras.
        A `rest` parameter (`exec`, `spawn`, `write` text) is the rest of the
        line exactly as typed, so quoting reaches the host shell intact.
        Returns (None, {}) when the first token is not a known command.
        """
        entries = self._tokenize(line)
        if not entries:
            return None, {}
        name = entries[0][0]
        if name not in self.catalog:
            return None, {}
        spec = self.catalog.get(name)

        switches = [p.name for p in spec.params if p.type == "boolean"]
        slots = [p for p in spec.params if p.type != "boolean"]
        args: Dict[str, Any] = {}

        if slots and slots[-1].rest and not switches:
            head = entries[1:len(slots)]
            for slot, (value, _) in zip(slots, head):
                args[slot.name] = self._coerce(spec, slot.name, slot.type, value)
            remainder = line[entries[len(head)][1]:].strip()
            if remainder:
                last = slots[len(head)]
                args[last.name] = self._coerce(spec, last.name, last.type, remainder)
        else:
            positional: List[str] = []
            for tok, _ in entries[1:]:
                flag = self._match_switches(tok, switches)
                if flag:
                    for key in flag:
                        args[key] = True
                else:
                    positional.append(tok)
            if len(positional) > len(slots):
                if not slots:
                    raise UsageError(f"usage: {spec.usage}")
                positional = positional[:len(slots) - 1] + [" ".join(positional[len(slots) - 1:])]
            for slot, value in zip(slots, positional):
                args[slot.name] = self._coerce(spec, slot.name, slot.type, value)

        for slot in slots:
            if slot.required and slot.name not in args:
                raise UsageError(f"usage: {spec.usage}")
        return name, args

    @staticmethod
    def _tokenize(line: str) -> List[Tuple[str, int]]:
        """shlex tokens paired with the offset in `line` just past each one."""
        lexer = shlex.shlex(line, posix=os.name == "posix")
        lexer.whitespace_split = True
        lexer.commenters = ""
        entries = []
        try:
            while True:
                tok = lexer.get_token()
                if tok == lexer.eof:
                    return entries
                entries.append((tok, lexer.instream.tell()))
        except ValueError as e:
            raise UsageError(f"cannot parse line: {e}") from e

    @staticmethod
    def _match_switches(token: str, switches: List[str]) -> List[str]:
        if not switches or not token.startswith("-") or token == "-":
            return []
        if token.startswith("--"):
            return [token[2:]] if token[2:] in switches else []
        picked = []
        for ch in token[1:]:
            match = next((s for s in switches if s.startswith(ch)), None)
            if match is None:
                return []
            picked.append(match)
        return picked

    @staticmethod
    def _coerce(spec: ToolSpec, name: str, type_: str, value: str) -> Any:
        if type_ == "integer":
            try:
                return int(value)
            except ValueError:
                raise UsageError(f"{spec.name}: '{name}' must be a number") from None
        return value

    def close(self) -> None:
        self.stop_all()

    # ---- navigation ----

    def _cmd_help(self, session: ShellSession) -> str:
        return self.catalog.usage_text()

    def _cmd_pwd(self, session: ShellSession) -> str:
        return str(session.cwd)

    def _cmd_cd(self, session: ShellSession, path: str) -> str:
        target = session.resolve(path)
        if not target.exists():
            raise NotFoundError(f"{path}: no such directory")
        if not target.is_dir():
            raise UsageError(f"{path}: not a directory")
        if not os.access(target, os.X_OK):
            raise PermissionDeniedError(f"{path}: permission denied")
        session.cwd = target
        return str(target)

    def _cmd_ls(self, session: ShellSession, path: Optional[str] = None) -> str:
        target = session.resolve(path) if path else session.cwd
        if not target.exists():
            raise NotFoundError(f"{path or target}: no such directory")
        if not target.is_dir():
            raise UsageError(f"{path}: not a directory")
        entries = sorted(target.iterdir(), key=lambda p: p.name)
        if not entries:
            return "(empty)"
        return "\n".join(("[D] " if e.is_dir() else "[F] ") + e.name for e in entries)

    def _cmd_tree(self, session: ShellSession, path: Optional[str] = None) -> str:
        root = session.resolve(path) if path else session.cwd
        if not root.exists():
            raise NotFoundError(f"{path or root}: no such directory")
        if not root.is_dir():
            raise UsageError(f"{path}: not a directory")
        lines = [root.name or str(root)]
        lines.extend(self._render_tree(root, "", {root.resolve()}))
        return "\n".join(lines)

    def _render_tree(self, directory: Path, prefix: str, ancestors: Set[Path]) -> List[str]:
        try:
            entries = sorted(directory.iterdir(), key=lambda p: p.name)
        except PermissionError:
            return [prefix + "└── [permission denied]"]
        lines = []
        for index, entry in enumerate(entries):
            last = index == len(entries) - 1
            connector = "└── " if last else "├── "
            if entry.is_dir():
                real = entry.resolve()
                if real in ancestors:
                    # symlink back into its own ancestry
                    lines.append(prefix + connector + entry.name + " (cycle)")
                    continue
                lines.append(prefix + connector + entry.name)
                child_prefix = prefix + ("    " if last else "│   ")
                lines.extend(self._render_tree(entry, child_prefix, ancestors | {real}))
            else:
                lines.append(prefix + connector + entry.name)
        return lines

    # ---- file CRUD ----

    def _cmd_mkdir(self, session: ShellSession, path: str) -> str:
        target = session.resolve(path)
        try:
            target.mkdir(parents=True, exist_ok=True)
        except FileExistsError:
            raise UsageError(f"{path}: exists and is not a directory") from None
        return f"Directory '{path}' created."

    def _cmd_touch(self, session: ShellSession, file: str) -> str:
        target = session.resolve(file)
        try:
            with open(target, "a", encoding="utf-8"):
                pass
        except OSError as e:
            raise from_os_error(e, file) from e
        return f"File '{file}' created."

    def _cmd_write(self, session: ShellSession, file: str, text: str) -> str:
        target = session.resolve(file)
        try:
            with open(target, "a", encoding="utf-8") as fh:
                fh.write(text + "\n")
        except OSError as e:
            raise from_os_error(e, file) from e
        return f"Text written to '{file}'."

    def _cmd_read(self, session: ShellSession, file: str) -> str:
        target = session.resolve(file)
        if target.is_dir():
            raise UsageError(f"{file}: is a directory")
        try:
            with open(target, "r", encoding="utf-8", errors="replace") as fh:
                return fh.read()
        except OSError as e:
            raise from_os_error(e, file) from e

    def _cmd_rm(self, session: ShellSession, path: str, recursive: bool = False, force: bool = False) -> str:
        target = session.resolve(path)
        if not os.path.lexists(target):
            if force:
                return f"Nothing to remove at '{path}'."
            raise NotFoundError(f"{path}: no such file or directory")
        try:
            if target.is_dir() and not target.is_symlink():
                if not recursive:
                    raise UsageError(f"{path}: is a directory (set recursive to remove it)")
                shutil.rmtree(target)
            else:
                target.unlink()
        except OSError as e:
            raise from_os_error(e, path) from e
        return f"Removed '{path}'{' recursively' if recursive else ''}."

    def _cmd_cp(self, session: ShellSession, src: str, dest: str, recursive: bool = False) -> str:
        source = session.resolve(src)
        target = session.resolve(dest)
        if not source.exists():
            raise NotFoundError(f"{src}: no such file or directory")
        try:
            if source.is_dir():
                if not recursive:
                    raise UsageError(f"{src}: is a directory (set recursive to copy it)")
                if target.is_dir():
                    target = target / source.name
                if target.resolve() == source.resolve() or source.resolve() in target.resolve().parents:
                    raise UsageError(f"cannot copy '{src}' into itself")
                shutil.copytree(source, target, symlinks=True, dirs_exist_ok=True)
            else:
                shutil.copy2(source, target)
        except shutil.SameFileError:
            raise UsageError(f"'{src}' and '{dest}' are the same file") from None
        except shutil.Error as e:
            raise ShellError(f"copy failed: {e}") from e
        except OSError as e:
            raise from_os_error(e) from e
        return f"Copied '{src}' -> '{dest}'."

    def _cmd_mv(self, session: ShellSession, src: str, dest: str) -> str:
        source = session.resolve(src)
        target = session.resolve(dest)
        if not os.path.lexists(source):
            raise NotFoundError(f"{src}: no such file or directory")
        try:
            shutil.move(str(source), str(target))
        except shutil.Error as e:
            raise UsageError(f"move failed: {e}") from e
        except OSError as e:
            raise from_os_error(e) from e
        return f"Moved '{src}' -> '{dest}'."

    # ---- network / browser ----

    def _cmd_fetch(self, session: ShellSession, url: str, dest: Optional[str] = None) -> str:
        try:
            resp = requests.get(url, timeout=self.fetch_timeout_seconds)
        except requests.RequestException as e:
            raise NetworkError(f"{url}: {e}") from e
        if resp.status_code >= 400:
            raise NetworkError(f"{url}: HTTP {resp.status_code} {resp.reason or ''}".rstrip())
        body = resp.content
        if dest:
            target = session.resolve(dest)
            try:
                target.write_bytes(body)
            except OSError as e:
                raise from_os_error(e, dest) from e
            return f"Saved to '{dest}' ({len(body)} bytes)."
        return body[:self.fetch_preview_bytes].decode("utf-8", errors="replace")

    def _cmd_chrome(self, session: ShellSession, url: Optional[str] = None) -> str:
        try:
            browser = webbrowser.get(self.browser) if self.browser else webbrowser.get()
            opened = browser.open(url or "about:blank")
        except webbrowser.Error as e:
            logger.warning("Browser launch failed: %s", e)
            raise SubprocessError(f"could not open browser: {e}") from e
        if not opened:
            raise SubprocessError("could not open browser")
        return f"Browser opened{f' at {url}' if url else ''}."

    # ---- processes ----

    def _cmd_exec(self, session: ShellSession, command: str) -> str:
        self.safety.check(command)
        return self._run_subprocess(command, session)

    def _run_fallback(self, line: str, session: ShellSession) -> str:
        if not self.safety.allow_fallback:
            raise PermissionDeniedError(f"unknown command '{line.split()[0]}' (host fallback disabled)")
        self.safety.check(line)
        return self._run_subprocess(line, session)

    def _subprocess_env(self) -> Dict[str, str]:
        env = os.environ.copy()
        env.update(self.env)
        return env

    def _popen(self, command: str, session: ShellSession, stdout: Any) -> subprocess.Popen:
        kwargs: Dict[str, Any] = {}
        if os.name == "posix":
            kwargs["start_new_session"] = True
        try:
            return subprocess.Popen(
                self.shell_prefix + [command],
                cwd=str(session.cwd),
                env=self._subprocess_env(),
                stdin=subprocess.DEVNULL,
                stdout=stdout,
                stderr=subprocess.STDOUT,
                **kwargs,
            )
        except OSError as e:
            raise SubprocessError(f"failed to start '{command}': {e}") from e

    def _run_subprocess(self, command: str, session: ShellSession) -> str:
        """
        Run a command to completion under the session's directory.

        stdout and stderr share one pipe. The wall-clock timeout and the
        output cap both kill the whole process group and surface as errors.
        """
        proc = self._popen(command, session, subprocess.PIPE)
        chunks: List[bytes] = []
        overflow = threading.Event()

        def pump() -> None:
            # the reader owns the pipe; it is closed once the last writer is gone
            total = 0
            with proc.stdout:
                while True:
                    chunk = proc.stdout.read1(_READ_CHUNK)
                    if not chunk:
                        return
                    total += len(chunk)
                    if total > self.max_output_bytes:
                        overflow.set()
                        _kill_tree(proc)
                        return
                    chunks.append(chunk)

        reader = threading.Thread(target=pump, name="exec-output", daemon=True)
        reader.start()
        deadline = time.monotonic() + self.timeout_seconds
        try:
            returncode = proc.wait(timeout=self.timeout_seconds)
            # background children may keep the pipe open after the shell exits
            reader.join(max(0.0, deadline - time.monotonic()))
            if reader.is_alive():
                raise subprocess.TimeoutExpired(command, self.timeout_seconds)
        except subprocess.TimeoutExpired:
            _kill_tree(proc)
            proc.wait()
            reader.join(1)
            logger.warning("Command timed out after %ss: %s", self.timeout_seconds, command)
            raise CommandTimeoutError(
                f"'{command}' exceeded {self.timeout_seconds}s and was terminated"
            ) from None

        if overflow.is_set():
            raise SubprocessError(
                f"'{command}' produced more than {self.max_output_bytes} bytes of output and was terminated"
            )
        output = b"".join(chunks).decode("utf-8", errors="replace")
        if returncode != 0:
            raise SubprocessError(f"'{command}' exited with code {returncode}\n{output}".rstrip())
        return output

    def _cmd_spawn(self, session: ShellSession, command: str) -> str:
        self.safety.check(command)
        fd, log_name = tempfile.mkstemp(prefix="gpt-shell-spawn-", suffix=".log")
        with os.fdopen(fd, "wb") as log:
            proc = self._popen(command, session, log)
        self._spawned[proc.pid] = _Spawned(proc=proc, command=command, log_path=Path(log_name))
        logger.info("Spawned pid %s: %s", proc.pid, command)
        return f"Started '{command}' in the background (pid {proc.pid})."

    def _cmd_stop(self, session: ShellSession, pid: Optional[int] = None) -> str:
        if pid is None:
            return self.stop_all() or "No background processes running."
        if pid not in self._spawned:
            raise NotFoundError(f"no background process with pid {pid}")
        return self._stop_one(pid)

    def _stop_one(self, pid: int) -> str:
        spawned = self._spawned.pop(pid)
        proc = spawned.proc
        if proc.poll() is None:
            _kill_tree(proc, signal.SIGTERM)
            try:
                proc.wait(timeout=5)
            except subprocess.TimeoutExpired:
                _kill_tree(proc)
                proc.wait()
        output = _tail(spawned.log_path, SPAWN_TAIL_BYTES)
        try:
            spawned.log_path.unlink()
        except OSError:
            logger.debug("Could not remove %s", spawned.log_path)
        return f"Stopped pid {pid} '{spawned.command}' (exit code {proc.returncode}).\n{output}".rstrip()

    def stop_all(self) -> str:
        return "\n".join(self._stop_one(pid) for pid in list(self._spawned))
