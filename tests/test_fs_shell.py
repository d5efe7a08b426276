"""Tests for the stateful command interpreter."""

import os
import re
import sys
from types import SimpleNamespace

import pytest
import requests

import fs_shell
from fs_shell import CommandShell, SafetyPolicy, ShellSession, flatten_call
from shell_errors import (
    CommandTimeoutError,
    NetworkError,
    NotFoundError,
    PermissionDeniedError,
    ProtocolError,
    SubprocessError,
    UsageError,
)
from tool_catalog import CATALOG, ToolCatalog, ToolSpec

posix_only = pytest.mark.skipif(sys.platform == "win32", reason="uses POSIX shell commands")


class TestCatalogBinding:
    def test_handlers_match_catalog(self, shell):
        """Shell commands and catalog names are the same set."""
        assert set(shell.command_names()) == set(CATALOG.names())

    def test_drift_is_rejected(self, tmp_path):
        """A catalog that disagrees with the handlers fails at construction."""
        partial = ToolCatalog([ToolSpec("pwd", "cwd", "pwd")])
        with pytest.raises(RuntimeError, match="disagree"):
            CommandShell(ShellSession(tmp_path), catalog=partial)

    def test_unknown_command_is_protocol_error(self, shell):
        with pytest.raises(ProtocolError):
            shell.dispatch("format_disk", {})


class TestNavigation:
    def test_pwd(self, shell, tmp_path):
        assert shell.dispatch("pwd") == str(tmp_path)

    def test_cd_relative_and_back(self, shell, tmp_path):
        shell.dispatch("mkdir", {"path": "a/b"})
        assert shell.dispatch("cd", {"path": "a/b"}) == str(tmp_path / "a" / "b")
        assert shell.dispatch("cd", {"path": ".."}) == str(tmp_path / "a")

    def test_cd_absolute(self, shell, tmp_path):
        (tmp_path / "abs").mkdir()
        shell.dispatch("cd", {"path": str(tmp_path / "abs")})
        assert shell.cwd == tmp_path / "abs"

    def test_cd_missing_leaves_cwd(self, shell, tmp_path):
        """cd into a missing path fails NotFound and keeps the directory."""
        with pytest.raises(NotFoundError):
            shell.dispatch("cd", {"path": "nope"})
        assert shell.cwd == tmp_path

    def test_cd_into_file(self, shell):
        shell.dispatch("touch", {"file": "f.txt"})
        with pytest.raises(UsageError):
            shell.dispatch("cd", {"path": "f.txt"})

    @pytest.mark.skipif(sys.platform == "win32" or os.geteuid() == 0,
                        reason="needs POSIX permissions enforced for this user")
    def test_cd_without_search_permission(self, shell, tmp_path):
        locked = tmp_path / "locked"
        locked.mkdir()
        locked.chmod(0o600)
        try:
            with pytest.raises(PermissionDeniedError):
                shell.dispatch("cd", {"path": "locked"})
            assert shell.cwd == tmp_path
        finally:
            locked.chmod(0o700)

    def test_ls_tags_entries(self, shell):
        shell.dispatch("mkdir", {"path": "dir"})
        shell.dispatch("touch", {"file": "file.txt"})
        assert shell.dispatch("ls").splitlines() == ["[D] dir", "[F] file.txt"]

    def test_ls_missing(self, shell):
        with pytest.raises(NotFoundError):
            shell.dispatch("ls", {"path": "ghost"})

    def test_explicit_session(self, shell, tmp_path):
        """A separate session keeps its own directory."""
        (tmp_path / "other").mkdir()
        other = ShellSession(tmp_path)
        shell.dispatch("cd", {"path": "other"}, session=other)
        assert other.cwd == tmp_path / "other"
        assert shell.cwd == tmp_path


class TestTree:
    def test_connectors(self, shell, tmp_path):
        """b.txt nests under sub; sub is last, a.txt first."""
        (tmp_path / "a.txt").write_text("a")
        (tmp_path / "sub").mkdir()
        (tmp_path / "sub" / "b.txt").write_text("b")
        assert shell.dispatch("tree").splitlines() == [
            tmp_path.name,
            "├── a.txt",
            "└── sub",
            "    └── b.txt",
        ]

    def test_non_last_directory_prefix(self, shell, tmp_path):
        (tmp_path / "a").mkdir()
        (tmp_path / "a" / "x.txt").write_text("")
        (tmp_path / "z.txt").write_text("")
        assert shell.dispatch("tree").splitlines()[1:] == [
            "├── a",
            "│   └── x.txt",
            "└── z.txt",
        ]

    @posix_only
    def test_symlink_cycle(self, shell, tmp_path):
        (tmp_path / "sub").mkdir()
        os.symlink(tmp_path, tmp_path / "sub" / "loop")
        out = shell.dispatch("tree")
        assert "loop (cycle)" in out


class TestFiles:
    def test_mkdir_idempotent(self, shell, tmp_path):
        shell.dispatch("mkdir", {"path": "x/y"})
        shell.dispatch("mkdir", {"path": "x/y"})
        assert (tmp_path / "x" / "y").is_dir()

    def test_mkdir_over_file(self, shell):
        shell.dispatch("touch", {"file": "taken"})
        with pytest.raises(UsageError):
            shell.dispatch("mkdir", {"path": "taken"})

    def test_touch_keeps_content(self, shell, tmp_path):
        (tmp_path / "keep.txt").write_text("data")
        shell.dispatch("touch", {"file": "keep.txt"})
        assert (tmp_path / "keep.txt").read_text() == "data"

    def test_write_appends_lines(self, shell):
        shell.dispatch("write", {"file": "f", "text": "a"})
        shell.dispatch("write", {"file": "f", "text": "b"})
        assert shell.dispatch("read", {"file": "f"}) == "a\nb\n"

    def test_write_missing_parent(self, shell):
        with pytest.raises(NotFoundError):
            shell.dispatch("write", {"file": "no/such/f.txt", "text": "x"})

    def test_read_missing(self, shell):
        with pytest.raises(NotFoundError):
            shell.dispatch("read", {"file": "missing.txt"})

    def test_rm_force(self, shell):
        """force on an absent path succeeds; without it the path is NotFound."""
        shell.dispatch("rm", {"path": "gone", "force": True})
        with pytest.raises(NotFoundError):
            shell.dispatch("rm", {"path": "gone", "force": False})

    def test_rm_directory_needs_recursive(self, shell, tmp_path):
        shell.dispatch("mkdir", {"path": "d/e"})
        with pytest.raises(UsageError):
            shell.dispatch("rm", {"path": "d"})
        shell.dispatch("rm", {"path": "d", "recursive": True})
        assert not (tmp_path / "d").exists()

    def test_cp_file_and_directory(self, shell, tmp_path):
        shell.dispatch("mkdir", {"path": "src"})
        shell.dispatch("write", {"file": "src/one.txt", "text": "1"})
        with pytest.raises(UsageError):
            shell.dispatch("cp", {"src": "src", "dest": "dst"})
        shell.dispatch("cp", {"src": "src", "dest": "dst", "recursive": True})
        assert (tmp_path / "dst" / "one.txt").read_text() == "1\n"
        shell.dispatch("cp", {"src": "src/one.txt", "dest": "copy.txt"})
        assert (tmp_path / "copy.txt").read_text() == "1\n"

    def test_cp_into_itself(self, shell):
        shell.dispatch("mkdir", {"path": "loop"})
        with pytest.raises(UsageError):
            shell.dispatch("cp", {"src": "loop", "dest": "loop/inner", "recursive": True})

    def test_mv(self, shell, tmp_path):
        shell.dispatch("write", {"file": "old.txt", "text": "x"})
        shell.dispatch("mv", {"src": "old.txt", "dest": "new.txt"})
        assert not (tmp_path / "old.txt").exists()
        assert (tmp_path / "new.txt").read_text() == "x\n"

    def test_mv_missing(self, shell):
        with pytest.raises(NotFoundError):
            shell.dispatch("mv", {"src": "nothing", "dest": "x"})


@posix_only
class TestExec:
    def test_output_and_cwd(self, shell, tmp_path):
        shell.dispatch("mkdir", {"path": "sub"})
        shell.dispatch("cd", {"path": "sub"})
        out = shell.dispatch("exec", {"command": "pwd"})
        assert os.path.realpath(out.strip()) == os.path.realpath(tmp_path / "sub")

    def test_stdout_and_stderr_combined(self, shell):
        out = shell.dispatch("exec", {"command": "echo out; echo err 1>&2"})
        assert "out" in out and "err" in out

    def test_nonzero_exit(self, shell):
        with pytest.raises(SubprocessError, match="code 3") as info:
            shell.dispatch("exec", {"command": "echo oops; exit 3"})
        assert "oops" in str(info.value)

    def test_timeout_then_usable(self, tmp_path):
        """A slow command times out instead of hanging; the shell keeps working."""
        sh = CommandShell(ShellSession(tmp_path), timeout_seconds=0.5)
        with pytest.raises(CommandTimeoutError):
            sh.dispatch("exec", {"command": "sleep 5"})
        assert sh.dispatch("exec", {"command": "echo alive"}).strip() == "alive"
        assert sh.dispatch("pwd") == str(tmp_path)

    def test_output_pipe_closed(self, tmp_path, monkeypatch):
        """The output pipe is released whether the command finishes or times out."""
        sh = CommandShell(ShellSession(tmp_path), timeout_seconds=0.5)
        started = []
        popen = sh._popen
        monkeypatch.setattr(sh, "_popen", lambda *a: started.append(popen(*a)) or started[-1])
        sh.dispatch("exec", {"command": "echo done"})
        with pytest.raises(CommandTimeoutError):
            sh.dispatch("exec", {"command": "sleep 5"})
        assert len(started) == 2
        assert all(proc.stdout.closed for proc in started)

    def test_output_cap(self, tmp_path):
        sh = CommandShell(ShellSession(tmp_path), max_output_bytes=1000)
        with pytest.raises(SubprocessError, match="more than 1000 bytes"):
            sh.dispatch("exec", {"command": "head -c 100000 /dev/zero"})

    def test_env_passed(self, tmp_path):
        sh = CommandShell(ShellSession(tmp_path), env={"GPT_SHELL_MARK": "xyz"})
        assert sh.dispatch("exec", {"command": "echo $GPT_SHELL_MARK"}).strip() == "xyz"

    def test_denylist(self, tmp_path):
        sh = CommandShell(ShellSession(tmp_path), safety=SafetyPolicy(denylist_regex=[r"\bsleep\b"]))
        with pytest.raises(PermissionDeniedError, match="denylist"):
            sh.dispatch("exec", {"command": "sleep 1"})

    def test_allowlist(self, tmp_path):
        policy = SafetyPolicy(allowlist_prefixes=["echo"], require_allowlist=True)
        sh = CommandShell(ShellSession(tmp_path), safety=policy)
        assert sh.dispatch("exec", {"command": "echo ok"}).strip() == "ok"
        with pytest.raises(PermissionDeniedError):
            sh.dispatch("exec", {"command": "ls"})

    def test_spawn_and_stop(self, shell):
        started = shell.dispatch("spawn", {"command": "sleep 30"})
        pid = int(re.search(r"pid (\d+)", started).group(1))
        stopped = shell.dispatch("stop", {"pid": pid})
        assert stopped.startswith(f"Stopped pid {pid}")
        with pytest.raises(NotFoundError):
            shell.dispatch("stop", {"pid": pid})

    def test_stop_all(self, shell):
        shell.dispatch("spawn", {"command": "sleep 30"})
        shell.dispatch("spawn", {"command": "sleep 30"})
        assert shell.dispatch("stop").count("Stopped pid") == 2
        assert shell.dispatch("stop") == "No background processes running."


class FakeResponse:
    def __init__(self, content: bytes, status_code: int = 200, reason: str = "OK"):
        self.content = content
        self.status_code = status_code
        self.reason = reason


class TestFetch:
    def test_preview_is_truncated(self, shell, monkeypatch):
        monkeypatch.setattr(fs_shell.requests, "get", lambda url, timeout: FakeResponse(b"x" * 5000))
        assert shell.dispatch("fetch", {"url": "http://example.test"}) == "x" * 1024

    def test_save_to_dest(self, shell, tmp_path, monkeypatch):
        monkeypatch.setattr(fs_shell.requests, "get", lambda url, timeout: FakeResponse(b"\x00\x01\x02"))
        out = shell.dispatch("fetch", {"url": "http://example.test/bin", "dest": "blob.bin"})
        assert "3 bytes" in out
        assert (tmp_path / "blob.bin").read_bytes() == b"\x00\x01\x02"

    def test_transport_error(self, shell, monkeypatch):
        def boom(url, timeout):
            raise requests.ConnectionError("refused")
        monkeypatch.setattr(fs_shell.requests, "get", boom)
        with pytest.raises(NetworkError, match="refused"):
            shell.dispatch("fetch", {"url": "http://localhost:1"})

    def test_http_error_status(self, shell, monkeypatch):
        monkeypatch.setattr(fs_shell.requests, "get",
                            lambda url, timeout: FakeResponse(b"", 404, "Not Found"))
        with pytest.raises(NetworkError, match="404"):
            shell.dispatch("fetch", {"url": "http://example.test/missing"})


class TestChrome:
    def test_opens_url(self, shell, monkeypatch):
        opened = []
        monkeypatch.setattr(fs_shell.webbrowser, "get",
                            lambda *a: SimpleNamespace(open=lambda url: opened.append(url) or True))
        assert "http://localhost:3000" in shell.dispatch("chrome", {"url": "http://localhost:3000"})
        assert opened == ["http://localhost:3000"]

    def test_launch_failure_is_reported(self, shell, monkeypatch):
        def missing(*a):
            raise fs_shell.webbrowser.Error("could not locate runnable browser")
        monkeypatch.setattr(fs_shell.webbrowser, "get", missing)
        result = shell.execute("chrome", {})
        assert not result.ok
        assert result.text.startswith("Error: [SubprocessError]")


class TestExecute:
    def test_errors_become_results(self, shell):
        result = shell.execute("read", {"file": "missing.txt"})
        assert not result.ok
        assert result.render().startswith("Error: [NotFound]")
        assert isinstance(result.error, NotFoundError)

    def test_unexpected_fault_is_contained(self, shell):
        shell._handlers["pwd"] = lambda session: 1 / 0
        result = shell.execute("pwd")
        assert not result.ok
        assert "ZeroDivisionError" in result.text

    def test_schema_violation(self, shell):
        result = shell.execute("rm", {"path": "x", "recursive": "yes"})
        assert result.text.startswith("Error: [ProtocolError]")


class TestRunLine:
    def test_flags_and_positionals(self, shell):
        assert shell.parse_line("rm -rf build") == ("rm", {"path": "build", "recursive": True, "force": True})
        assert shell.parse_line("cp --recursive a b") == ("cp", {"src": "a", "dest": "b", "recursive": True})

    def test_last_parameter_takes_rest(self, shell):
        """The trailing parameter is the rest of the line as typed."""
        assert shell.parse_line("write notes.txt hello  world") == (
            "write", {"file": "notes.txt", "text": "hello  world"})
        assert shell.parse_line("exec ls -la") == ("exec", {"command": "ls -la"})
        assert shell.parse_line("exec echo 'a  b' \"c\"") == ("exec", {"command": "echo 'a  b' \"c\""})

    def test_quoted_path(self, shell):
        assert shell.parse_line("cd 'my dir'") == ("cd", {"path": "my dir"})
        assert shell.parse_line("fetch http://example.test \"out file.html\"") == (
            "fetch", {"url": "http://example.test", "dest": "out file.html"})

    @posix_only
    def test_exec_keeps_quoting(self, shell, tmp_path):
        """Quoted arguments reach the host shell grouped, metacharacters included."""
        assert shell.run_line("exec printf '%s|' 'a b' c").text == "a b|c|"
        result = shell.run_line("exec echo 'x; touch pwned'")
        assert result.ok
        assert result.text == "x; touch pwned\n"
        assert not (tmp_path / "pwned").exists()

    def test_safety_sees_typed_command(self, tmp_path):
        sh = CommandShell(ShellSession(tmp_path), safety=SafetyPolicy(denylist_regex=[r"'rm -rf /'"]))
        result = sh.run_line("exec echo 'rm -rf /'")
        assert isinstance(result.error, PermissionDeniedError)

    def test_unbalanced_quote(self, shell):
        with pytest.raises(UsageError, match="cannot parse"):
            shell.parse_line("write notes.txt 'open")

    def test_integer_argument(self, shell):
        assert shell.parse_line("stop 42") == ("stop", {"pid": 42})
        with pytest.raises(UsageError):
            shell.parse_line("stop abc")

    def test_missing_argument(self, shell):
        result = shell.run_line("cd")
        assert result.text.startswith("Error: [UsageError] usage: cd <path>")

    def test_runs_catalog_command(self, shell, tmp_path):
        shell.run_line("mkdir logs")
        assert (tmp_path / "logs").is_dir()
        assert shell.run_line("help").text.startswith("Available commands:")

    def test_empty_line(self, shell):
        assert shell.run_line("   ").text == ""

    @posix_only
    def test_unknown_command_falls_back(self, shell):
        result = shell.run_line("echo fallback-ok")
        assert result.ok
        assert result.text.strip() == "fallback-ok"

    def test_fallback_can_be_disabled(self, tmp_path):
        sh = CommandShell(ShellSession(tmp_path), safety=SafetyPolicy(allow_fallback=False))
        result = sh.run_line("echo nope")
        assert isinstance(result.error, PermissionDeniedError)


def test_flatten_call():
    assert flatten_call("rm", {"path": "x", "recursive": True, "force": False}) == "rm x --recursive"
