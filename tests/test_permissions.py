from __future__ import annotations

import json
from pathlib import Path

from ppe_runtime.permissions import AllowList, PermissionDecision, args_fingerprint, requires_approval


def test_dangerous_commands_require_approval() -> None:
    assert requires_approval("shell", {"command": "rm -rf /tmp/x"}) is True
    assert requires_approval("shell", {"command": "sudo apt install x"}) is True
    assert requires_approval("shell", {"command": "ls -la"}) is False
    assert requires_approval("delete_file", {"path": "a.txt"}) is True
    assert requires_approval("write_file", {"file_path": "/etc/hosts"}) is True
    assert requires_approval("write_file", {"file_path": "notes.txt"}) is False


def test_allow_list_commands_patterns_and_tools(tmp_path: Path) -> None:
    allow = AllowList(tmp_path / "allow.json")
    allow.allow("shell", {"command": "git status"})
    allow.allow("shell", {"command": "npm run *"}, pattern=True)
    allow.allow("search", {"q": "cats"})

    assert allow.is_allowed("shell", {"command": "git status"})
    assert allow.is_allowed("shell", {"command": "npm run test"})
    assert not allow.is_allowed("shell", {"command": "git push"})
    assert allow.is_allowed("search", {"q": "cats"})
    assert not allow.is_allowed("search", {"q": "dogs"})

    reloaded = AllowList(tmp_path / "allow.json")
    assert reloaded.snapshot() == allow.snapshot()
    data = json.loads((tmp_path / "allow.json").read_text(encoding="utf-8"))
    assert data["commands"] == ["git status"]
    assert data["patterns"] == ["npm run *"]
    assert data["tools"] == [f"search:{args_fingerprint({'q': 'cats'})}"]


def test_patterns_never_cover_dangerous_commands() -> None:
    allow = AllowList()
    allow.allow("shell", {"command": "rm *"}, pattern=True)
    assert not allow.is_allowed("shell", {"command": "rm -rf /"})


def test_revoke() -> None:
    allow = AllowList()
    allow.allow("shell", {"command": "make"})
    allow.revoke("shell", {"command": "make"})
    assert not allow.is_allowed("shell", {"command": "make"})


def test_request_permission_remembers_safe_approvals_only() -> None:
    asked = []

    def prompt(tool, args):
        asked.append(tool)
        return PermissionDecision.ALLOWED

    allow = AllowList(prompt=prompt)
    assert allow.request_permission("search", {"q": "x"}) == PermissionDecision.ALLOWED
    assert allow.is_allowed("search", {"q": "x"})

    assert allow.request_permission("shell", {"command": "sudo reboot"}) == PermissionDecision.ALLOWED
    assert not allow.is_allowed("shell", {"command": "sudo reboot"})
    assert asked == ["search", "shell"]


def test_without_prompt_permission_needs_approval() -> None:
    assert AllowList().request_permission("search", {}) == PermissionDecision.NEEDS_APPROVAL


def test_corrupt_allow_list_file_is_ignored(tmp_path: Path) -> None:
    path = tmp_path / "allow.json"
    path.write_text("{not json", encoding="utf-8")
    allow = AllowList(path)
    assert allow.snapshot() == {"commands": [], "patterns": [], "tools": []}


def test_allow_list_file_that_is_not_an_object_is_ignored(tmp_path: Path) -> None:
    path = tmp_path / "allow.json"
    path.write_text(json.dumps(["ls"]), encoding="utf-8")
    allow = AllowList(path)
    assert allow.snapshot() == {"commands": [], "patterns": [], "tools": []}
    allow.allow("shell", {"command": "ls"})
    assert json.loads(path.read_text(encoding="utf-8"))["commands"] == ["ls"]
