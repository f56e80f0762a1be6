from __future__ import annotations

import fnmatch
import hashlib
import json
import logging
import re
import threading
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol, Set

logger = logging.getLogger(__name__)

SHELL_TOOL = "shell"

DANGEROUS_COMMAND_PATTERNS = [
    re.compile(r"\brm\s+-[a-zA-Z]*[rf][a-zA-Z]*\b"),
    re.compile(r"\bsudo\b"),
    re.compile(r"\bmkfs(\.\w+)?\b"),
    re.compile(r"\bdd\s+if="),
    re.compile(r"\bchmod\s+(-R\s+)?777\b"),
    re.compile(r">\s*/dev/sd[a-z]"),
    re.compile(r":\(\)\s*\{\s*:\|:&\s*\};:"),
]
PROTECTED_PATH_PREFIXES = ("/etc", "/sys", "/proc", "/boot")
DESTRUCTIVE_FILE_TOOLS = {"delete_file", "move_file", "rename_file"}


class PermissionDecision(str, Enum):
    ALLOWED = "ALLOWED"
    DENIED = "DENIED"
    SKIPPED = "SKIPPED"
    NEEDS_APPROVAL = "NEEDS_APPROVAL"


class PermissionPolicy(Protocol):
    def is_allowed(self, tool: str, args: Mapping[str, Any]) -> bool:
        ...

    def request_permission(self, tool: str, args: Mapping[str, Any]) -> PermissionDecision:
        ...


def args_fingerprint(args: Mapping[str, Any]) -> str:
    raw = json.dumps(args, sort_keys=True, default=str).encode("utf-8")
    return hashlib.sha256(raw).hexdigest()[:16]


def requires_approval(tool: str, args: Mapping[str, Any]) -> bool:
    """True for shell commands and file operations that are never auto-approved."""
    if tool == SHELL_TOOL:
        command = str(args.get("command", ""))
        return any(p.search(command) for p in DANGEROUS_COMMAND_PATTERNS)
    if tool in DESTRUCTIVE_FILE_TOOLS:
        return True
    path = str(args.get("file_path") or args.get("path") or "")
    return tool.startswith("write") and path.startswith(PROTECTED_PATH_PREFIXES)


class AllowList:
    """
    Persistent allow list of shell commands, ``*`` command patterns and
    ``tool:argshash`` keys for other tools.

    ``request_permission`` defers to ``prompt`` (typically a UI callback) and
    remembers ALLOWED answers.
    """

    def __init__(
        self,
        path: Optional[Path] = None,
        prompt: Optional[Callable[[str, Mapping[str, Any]], PermissionDecision]] = None,
    ):
        self.path = path
        self._prompt = prompt
        self._lock = threading.Lock()
        self._commands: Set[str] = set()
        self._patterns: List[str] = []
        self._tools: Set[str] = set()
        if path is not None:
            self._load()

    def _tool_key(self, tool: str, args: Mapping[str, Any]) -> str:
        return f"{tool}:{args_fingerprint(args)}"

    def is_allowed(self, tool: str, args: Mapping[str, Any]) -> bool:
        with self._lock:
            if tool == SHELL_TOOL:
                command = str(args.get("command", ""))
                if command in self._commands:
                    return True
                if requires_approval(tool, args):
                    return False
                return any(fnmatch.fnmatchcase(command, p) for p in self._patterns)
            return self._tool_key(tool, args) in self._tools

    def allow(self, tool: str, args: Mapping[str, Any], *, pattern: bool = False) -> None:
        with self._lock:
            if tool == SHELL_TOOL:
                command = str(args.get("command", ""))
                if pattern and "*" in command:
                    if command not in self._patterns:
                        self._patterns.append(command)
                else:
                    self._commands.add(command)
            else:
                self._tools.add(self._tool_key(tool, args))
            self._save()

    def revoke(self, tool: str, args: Mapping[str, Any]) -> None:
        with self._lock:
            if tool == SHELL_TOOL:
                command = str(args.get("command", ""))
                self._commands.discard(command)
                if command in self._patterns:
                    self._patterns.remove(command)
            else:
                self._tools.discard(self._tool_key(tool, args))
            self._save()

    def request_permission(self, tool: str, args: Mapping[str, Any]) -> PermissionDecision:
        if self._prompt is None:
            return PermissionDecision.NEEDS_APPROVAL
        decision = PermissionDecision(self._prompt(tool, args))
        if decision == PermissionDecision.ALLOWED and not requires_approval(tool, args):
            self.allow(tool, args)
        return decision

    def snapshot(self) -> Dict[str, List[str]]:
        with self._lock:
            return {
                "commands": sorted(self._commands),
                "patterns": list(self._patterns),
                "tools": sorted(self._tools),
            }

    def _load(self) -> None:
        if self.path is None or not self.path.exists():
            return
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.error(f"Failed to load allow list {self.path}: {exc}")
            return
        if not isinstance(data, dict):
            logger.error(f"Allow list {self.path} is not a JSON object; ignoring it")
            return
        self._commands = set(data.get("commands") or [])
        self._patterns = list(data.get("patterns") or [])
        self._tools = set(data.get("tools") or [])
        logger.debug(f"Loaded {len(self._commands)} commands and {len(self._patterns)} patterns")

    def _save(self) -> None:
        if self.path is None:
            return
        payload = {
            "commands": sorted(self._commands),
            "patterns": self._patterns,
            "tools": sorted(self._tools),
        }
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_text(json.dumps(payload, indent=2) + "\n", encoding="utf-8")
        tmp.replace(self.path)
