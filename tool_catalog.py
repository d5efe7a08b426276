"""
Static catalog of the commands the model may call.

A single CATALOG instance backs both the OpenAI `tools=` payload and the
shell's handler registry, so the two cannot drift apart.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from shell_errors import ProtocolError


@dataclass(frozen=True)
class ParamSpec:
    name: str
    type: str = "string"
    required: bool = False
    description: str = ""
    # on a typed line, takes the rest of the line as written
    rest: bool = False


@dataclass(frozen=True)
class ToolSpec:
    name: str
    description: str
    usage: str
    params: Tuple[ParamSpec, ...] = field(default_factory=tuple)

    def param(self, name: str) -> Optional[ParamSpec]:
        for p in self.params:
            if p.name == name:
                return p
        return None

    def to_openai(self) -> Dict[str, Any]:
        properties: Dict[str, Any] = {}
        for p in self.params:
            prop: Dict[str, Any] = {"type": p.type}
            if p.description:
                prop["description"] = p.description
            properties[p.name] = prop
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": {
                    "type": "object",
                    "properties": properties,
                    "required": [p.name for p in self.params if p.required],
                },
            },
        }


def _matches_type(value: Any, expected: str) -> bool:
    if expected == "string":
        return isinstance(value, str)
    if expected == "boolean":
        return isinstance(value, bool)
    if expected == "integer":
        return isinstance(value, int) and not isinstance(value, bool)
    return False


class ToolCatalog:
    def __init__(self, specs: List[ToolSpec]):
        self._specs: Dict[str, ToolSpec] = {}
        for spec in specs:
            if spec.name in self._specs:
                raise ValueError(f"Duplicate tool name: {spec.name}")
            self._specs[spec.name] = spec

    def __contains__(self, name: str) -> bool:
        return name in self._specs

    def __iter__(self):
        return iter(self._specs.values())

    def names(self) -> List[str]:
        return list(self._specs)

    def get(self, name: str) -> ToolSpec:
        try:
            return self._specs[name]
        except KeyError:
            raise ProtocolError(f"Unknown tool: {name}") from None

    def to_openai(self) -> List[Dict[str, Any]]:
        return [spec.to_openai() for spec in self._specs.values()]

    def usage_text(self) -> str:
        width = max(len(spec.usage) for spec in self._specs.values())
        lines = ["Available commands:"]
        for spec in self._specs.values():
            lines.append(f"  {spec.usage.ljust(width)}  - {spec.description}")
        lines.append(f"  {'<any command>'.ljust(width)}  - run directly on the host (line mode only)")
        return "\n".join(lines)

    def validate(self, name: str, args: Dict[str, Any]) -> None:
        """
        Check a tool call against its declared parameters.

        Raises ProtocolError on an unknown tool, a missing required argument,
        an undeclared argument or a type mismatch.
        """
        spec = self.get(name)
        if not isinstance(args, dict):
            raise ProtocolError(f"{name}: arguments must be an object")

        for p in spec.params:
            if p.required and args.get(p.name) in (None, ""):
                raise ProtocolError(f"{name}: missing required argument '{p.name}'")

        unknown = [k for k in args if spec.param(k) is None]
        if unknown:
            raise ProtocolError(f"{name}: unknown argument(s): {', '.join(sorted(unknown))}")

        for key, value in args.items():
            if value is None:
                continue
            expected = spec.param(key).type
            if not _matches_type(value, expected):
                raise ProtocolError(
                    f"{name}: argument '{key}' must be {expected}, got {type(value).__name__}"
                )


# -----------------------------
# Command vocabulary
# -----------------------------

def _path(description: str = "Relative or absolute path.", required: bool = True) -> ParamSpec:
    return ParamSpec("path", "string", required, description)


CATALOG = ToolCatalog([
    ToolSpec("help", "Show the list of available commands.", "help"),
    ToolSpec("pwd", "Show the current working directory.", "pwd"),
    ToolSpec("cd", "Change the current working directory.", "cd <path>",
             (_path(),)),
    ToolSpec("ls", "List files and directories (current directory if omitted).", "ls [path]",
             (_path("Directory to list (optional).", required=False),)),
    ToolSpec("tree", "Show the file hierarchy recursively.", "tree [path]",
             (_path("Root directory (optional).", required=False),)),
    ToolSpec("mkdir", "Create a directory and any missing parents.", "mkdir <path>",
             (_path("Directory name or path."),)),
    ToolSpec("touch", "Create an empty file if it does not exist.", "touch <file>",
             (ParamSpec("file", "string", True, "File to create."),)),
    ToolSpec("write", "Append a line of text to a file, creating it if needed.", "write <file> <text ...>",
             (ParamSpec("file", "string", True, "Target file."),
              ParamSpec("text", "string", True, "Text to append; a newline is added.", rest=True))),
    ToolSpec("read", "Read the full content of a file.", "read <file>",
             (ParamSpec("file", "string", True, "File to read."),)),
    ToolSpec("rm", "Remove a file, or a directory tree when recursive.", "rm [-rf] <path>",
             (_path("File or directory to remove."),
              ParamSpec("recursive", "boolean", False, "Remove directories and their contents."),
              ParamSpec("force", "boolean", False, "Ignore a target that does not exist."))),
    ToolSpec("cp", "Copy a file, or a directory when recursive.", "cp [-r] <src> <dest>",
             (ParamSpec("src", "string", True, "Source path."),
              ParamSpec("dest", "string", True, "Destination path."),
              ParamSpec("recursive", "boolean", False, "Copy directories recursively."))),
    ToolSpec("mv", "Move or rename a file or directory.", "mv <src> <dest>",
             (ParamSpec("src", "string", True, "Source path."),
              ParamSpec("dest", "string", True, "Destination path."))),
    ToolSpec("fetch", "HTTP GET a URL; save the body to a file if dest is given.", "fetch <url> [dest]",
             (ParamSpec("url", "string", True, "URL to fetch."),
              ParamSpec("dest", "string", False, "File to save the raw body to (optional)."))),
    ToolSpec("exec", "Run a system command in the current directory and return its output.", "exec <command ...>",
             (ParamSpec("command", "string", True, "Command line to run.", rest=True),)),
    ToolSpec("spawn", "Start a long-running command (e.g. a server) in the background.", "spawn <command ...>",
             (ParamSpec("command", "string", True, "Command line to start.", rest=True),)),
    ToolSpec("stop", "Stop a background process started by spawn (all of them if pid is omitted).", "stop [pid]",
             (ParamSpec("pid", "integer", False, "Process id returned by spawn (optional)."),)),
    ToolSpec("chrome", "Open the web browser, optionally at a URL.", "chrome [url]",
             (ParamSpec("url", "string", False, "URL to open (optional)."),)),
])
