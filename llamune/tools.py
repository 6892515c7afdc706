import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel, Field, ValidationError


logger = logging.getLogger("uvicorn.error")

SKIP_DIRS = {".git", "node_modules", "__pycache__", ".venv", "venv", "dist", "build", ".mypy_cache", ".pytest_cache"}


class ToolError(Exception):
    """Recoverable tool failure; rendered as text for the model."""


class Workspace:
    """Read-only view of the files under a workspace root."""

    def __init__(self, max_file_bytes: int = 100_000, tree_max_depth: int = 3, tree_max_entries: int = 200):
        self.max_file_bytes = max_file_bytes
        self.tree_max_depth = tree_max_depth
        self.tree_max_entries = tree_max_entries

    def resolve(self, root: str, relative_path: str) -> Path:
        base = Path(root).expanduser().resolve()
        if not base.is_dir():
            raise ToolError(f"Workspace root not found: {root}")
        rel = (relative_path or ".").strip() or "."
        target = (base / rel).resolve()
        try:
            target.relative_to(base)
        except ValueError:
            raise ToolError(f"Path escapes the workspace: {relative_path}")
        return target

    def list_tree(self, root: str) -> str:
        base = Path(root).expanduser().resolve()
        if not base.is_dir():
            return f"(workspace not found: {root})"
        lines = [f"{base.name}/"]
        count = 0
        truncated = False

        def inside(entry: Path) -> bool:
            try:
                entry.resolve().relative_to(base)
            except (OSError, ValueError):
                return False
            return True

        def walk(path: Path, depth: int, prefix: str) -> None:
            nonlocal count, truncated
            if truncated or depth > self.tree_max_depth:
                return
            try:
                entries = sorted(path.iterdir(), key=lambda p: (not p.is_dir(), p.name.lower()))
            except OSError:
                return
            entries = [
                e for e in entries if not e.name.startswith(".") and e.name not in SKIP_DIRS and inside(e)
            ]
            for index, entry in enumerate(entries):
                if truncated:
                    return
                if count >= self.tree_max_entries:
                    truncated = True
                    lines.append(f"{prefix}...")
                    return
                last = index == len(entries) - 1
                connector = "└── " if last else "├── "
                suffix = "/" if entry.is_dir() else ""
                lines.append(f"{prefix}{connector}{entry.name}{suffix}")
                count += 1
                if entry.is_dir():
                    walk(entry, depth + 1, prefix + ("    " if last else "│   "))

        walk(base, 1, "")
        return "\n".join(lines)

    def list_directory(self, root: str, relative_path: str) -> str:
        target = self.resolve(root, relative_path)
        if not target.exists():
            raise ToolError(f"Directory not found: {relative_path}")
        if not target.is_dir():
            raise ToolError(f"Not a directory: {relative_path}")
        lines = []
        for entry in sorted(target.iterdir(), key=lambda p: (not p.is_dir(), p.name.lower())):
            if entry.is_dir():
                lines.append(f"[dir]  {entry.name}/")
            else:
                lines.append(f"[file] {entry.name} ({entry.stat().st_size} bytes)")
        if not lines:
            return "(empty directory)"
        return "\n".join(lines)

    def read_file(self, root: str, relative_path: str) -> str:
        target = self.resolve(root, relative_path)
        if not target.exists():
            raise ToolError(f"File not found: {relative_path}")
        if not target.is_file():
            raise ToolError(f"Not a file: {relative_path}")
        size = target.stat().st_size
        if size > self.max_file_bytes:
            raise ToolError(f"File too large: {relative_path} ({size} bytes, limit {self.max_file_bytes})")
        data = target.read_bytes()
        try:
            return data.decode("utf-8")
        except UnicodeDecodeError:
            raise ToolError(f"File is not UTF-8 text: {relative_path}")


class PathArgs(BaseModel):
    path: str = Field(default=".", description="Path relative to the workspace root")


class ReadFileArgs(BaseModel):
    path: str = Field(description="Path of the file relative to the workspace root")


@dataclass(frozen=True)
class ToolSpec:
    name: str
    description: str
    args_model: type
    handler: Callable[[Workspace, str, Any], str]

    def schema(self) -> Dict[str, Any]:
        parameters = self.args_model.model_json_schema()
        parameters.pop("title", None)
        for prop in parameters.get("properties", {}).values():
            prop.pop("title", None)
        return {
            "type": "function",
            "function": {"name": self.name, "description": self.description, "parameters": parameters},
        }


TOOL_SPECS: List[ToolSpec] = [
    ToolSpec(
        name="list_files",
        description="List the files and directories at a path inside the project directory.",
        args_model=PathArgs,
        handler=lambda ws, root, args: ws.list_directory(root, args.path),
    ),
    ToolSpec(
        name="read_file",
        description="Read the text content of a file inside the project directory.",
        args_model=ReadFileArgs,
        handler=lambda ws, root, args: ws.read_file(root, args.path),
    ),
]

TOOL_SCHEMAS: List[Dict[str, Any]] = [spec.schema() for spec in TOOL_SPECS]


class ToolExecutor:
    def __init__(self, workspace: Optional[Workspace] = None):
        self.workspace = workspace or Workspace()
        self._tools: Dict[str, ToolSpec] = {spec.name: spec for spec in TOOL_SPECS}

    def schemas(self) -> List[Dict[str, Any]]:
        return [self._tools[name].schema() for name in self._tools]

    def execute(self, root: str, name: str, args: Optional[Dict[str, Any]]) -> str:
        """Run one tool call; failures come back as text, never raised."""
        spec = self._tools.get(name)
        if not spec:
            return f"Error: Unknown tool: {name}"
        try:
            parsed = spec.args_model(**(args or {}))
        except (ValidationError, TypeError) as exc:
            return f"Error: Invalid arguments for {name}: {exc}"
        try:
            return spec.handler(self.workspace, root, parsed)
        except ToolError as exc:
            return f"Error: {exc}"
        except OSError as exc:
            logger.warning("Tool %s failed on %s: %s", name, root, exc)
            return f"Error: {exc.strerror or exc}"


def workspace_prompt(workspace: Workspace, root: str) -> str:
    tree = workspace.list_tree(root)
    return (
        "\n\n## Project structure\n\n"
        "You can access the following project directory:\n"
        f"```\n{tree}\n```\n\n"
        "Use the read_file tool to read a file and the list_files tool to list a directory."
    )
