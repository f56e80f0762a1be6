from __future__ import annotations

import logging
import textwrap
from pathlib import Path

import pytest

from ppe_runtime.errors import ScriptParseError
from ppe_runtime.script import ControlFlowKind, parse_file, parse_instruction, parse_params, parse_script


def _script(text: str):
    return parse_script(textwrap.dedent(text).lstrip("\n"))


def test_front_matter_and_turns() -> None:
    script = _script(
        """
        ---
        parameters:
          name: World
          empty:
        input: [name]
        output:
          type: object
        author: me
        ---
        system: You are helpful.
        user: Hello {{name}}
        ***
        user: Second turn
        """
    )
    assert script.parameters == {"name": "World", "empty": ""}
    assert script.input == ["name"]
    assert script.output == {"type": "object"}
    assert script.metadata == {"author": "me"}
    assert len(script.turns) == 2
    first = script.turns[0]
    assert [(m.role, m.content) for m in first.messages] == [
        ("system", "You are helpful."),
        ("user", "Hello {{name}}"),
    ]


def test_front_matter_without_leading_delimiter() -> None:
    script = parse_script("parameters:\n  a: 1\n---\nuser: hi\n")
    assert script.parameters == {"a": 1}
    assert script.turns[0].messages[0].content == "hi"


def test_role_continuation_lines_join_with_newline() -> None:
    script = _script(
        """
        ---
        ---
        user: hello
        world
        """
    )
    assert script.turns[0].messages[0].content == "hello\nworld"


def test_block_scalar_message_keeps_lines_and_indented_role_text() -> None:
    script = _script(
        """
        ---
        ---
        user: |
          line1
          note: still content
        
          line2
        assistant: ok
        """
    )
    messages = script.turns[0].messages
    assert messages[0].content == "line1\nnote: still content\n\nline2"
    assert messages[1].role == "assistant"


def test_text_before_any_role_is_a_user_message() -> None:
    script = _script(
        """
        ---
        ---
        just some text
        # a comment
        """
    )
    assert [(m.role, m.content) for m in script.turns[0].messages] == [("user", "just some text")]


def test_chain_directive_with_params() -> None:
    script = _script(
        """
        ---
        ---
        user: hi
        -> next(foo='bar', n=2)
        """
    )
    turn = script.turns[0]
    assert turn.chain_to == "next"
    assert turn.chain_params == {"foo": "bar", "n": "2"}


def test_chain_directive_with_unparseable_params_keeps_target(caplog) -> None:
    caplog.set_level(logging.WARNING)
    script = _script(
        """
        ---
        ---
        -> next(foo=
        """
    )
    turn = script.turns[0]
    assert turn.chain_to == "next"
    assert turn.chain_params == {}


def test_malformed_front_matter_degrades_to_empty(caplog) -> None:
    caplog.set_level(logging.WARNING)
    script = parse_script("---\nparameters: [unclosed\n---\nuser: hi\n")
    assert script.parameters == {}
    assert script.metadata == {}
    assert script.turns[0].messages[0].content == "hi"
    assert any("front matter" in r.getMessage() for r in caplog.records)


def test_parse_is_idempotent() -> None:
    text = "---\nparameters:\n  x: 1\n---\nuser: a [[out]]\n$set: y=2\n-> other\n"
    assert parse_script(text) == parse_script(text)


def test_empty_segments_produce_no_turns() -> None:
    script = parse_script("---\n---\n\n---\n# only a comment\n")
    assert script.turns == []


def test_message_placeholders_are_extracted() -> None:
    script = _script(
        r"""
        ---
        ---
        user: #Start {{x}} [[@helper(a=1)]] [[@$echo(value=hi)]] /(\d+)/i:text:1
        assistant: [[answer: model=gpt-4 temperature=0.2]]
        assistant: [[mood: | happy | sad:2]]
        """
    )
    first, second, third = script.turns[0].messages
    assert first.immediate_format is True
    assert first.content.startswith("Start")
    assert first.script_replacements[0].script_name == "helper"
    assert first.script_replacements[0].params == {"a": "1"}
    assert first.instruction_replacements[0].instruction_name == "echo"
    regex = first.regex_replacements[0]
    assert (regex.pattern, regex.options, regex.variable, regex.group_index) == (r"(\d+)", "i", "text", 1)
    assert first.ai_placeholder is None

    assert second.ai_placeholder is not None
    assert second.ai_placeholder.var == "answer"
    assert second.ai_placeholder.params == {"model": "gpt-4", "temperature": 0.2}

    constrained = third.constrained_options
    assert constrained is not None
    assert constrained.options == ["happy", "sad"]
    assert constrained.count == 2
    assert constrained.random is False


def test_instruction_forms() -> None:
    echo = parse_instruction("$echo: 'hello there'")
    assert echo.name == "echo"
    assert echo.args == {"value": "hello there", "isTemplateRef": False}

    ref = parse_instruction("$echo: ?=user.name")
    assert ref.args == {"value": "user.name", "isTemplateRef": True}

    call = parse_instruction("$call(script=summary, style=\"short form\")")
    assert call.name == "call"
    assert call.args == {"script": "summary", "style": "short form"}

    bare = parse_instruction("$print")
    assert bare.name == "print" and bare.args == {}

    assert parse_params("garbage without pairs") == {}


def test_control_flow_blocks_keep_order_with_instructions() -> None:
    script = _script(
        """
        ---
        ---
        $set: count=3
        $if count == 3
          then: $echo: yes
          else:
            - $echo: no
        $for items
          - $echo: {{item}}
        $match mode
          fast: $echo: quick; $set: speed=1
          _: $echo: other
        $pipe $set: x=1 -> summarize
        $print
        """
    )
    instructions = script.turns[0].instructions
    assert [i.name for i in instructions] == ["set", "if", "for", "match", "pipe", "print"]

    if_block = instructions[1].block
    assert if_block.kind == ControlFlowKind.IF
    assert if_block.condition == "count == 3"
    assert [i.args["value"] for i in if_block.then_instructions] == ["yes"]
    assert [i.args["value"] for i in if_block.else_instructions] == ["no"]

    for_block = instructions[2].block
    assert for_block.kind == ControlFlowKind.FOR
    assert [i.args["value"] for i in for_block.do_instructions] == ["{{item}}"]

    match_block = instructions[3].block
    assert set(match_block.cases) == {"fast", "_"}
    assert [i.name for i in match_block.cases["fast"]] == ["echo", "set"]

    pipe_block = instructions[4].block
    assert pipe_block.pipe_chain == ["$set: x=1", "summarize"]
    assert len(script.turns[0].control_flow_blocks) == 4


def test_control_flow_block_rejects_mismatched_payload() -> None:
    from ppe_runtime.script import ControlFlowBlock

    with pytest.raises(ValueError):
        ControlFlowBlock(kind=ControlFlowKind.IF, condition="x", do_instructions=[])
    with pytest.raises(ValueError):
        ControlFlowBlock(kind=ControlFlowKind.PIPE)


def test_front_matter_flags_and_imports() -> None:
    script = parse_script("---\ntype: agent\nimport: helpers\nautoRunLLMIfPromptAvailable: false\n---\n")
    assert script.type == "agent"
    assert script.imports == ["helpers"]
    assert script.auto_run_llm_if_prompt_available is False


def test_parse_file_records_source_path(tmp_path: Path) -> None:
    path = tmp_path / "hello.ai.yaml"
    path.write_text("---\n---\nuser: hi\n", encoding="utf-8")
    script = parse_file(path)
    assert script.source_path == str(path)


def test_parse_file_rejects_non_utf8(tmp_path: Path) -> None:
    path = tmp_path / "bad.ai.yaml"
    path.write_bytes(b"\xff\xfe\x00bad")
    with pytest.raises(ScriptParseError):
        parse_file(path)


def test_control_block_parser_rejects_non_header_line() -> None:
    from ppe_runtime.script.parser import _parse_control_block

    with pytest.raises(ScriptParseError):
        _parse_control_block(["user: not a block"], 0)
