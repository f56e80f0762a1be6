from __future__ import annotations

import json
from pathlib import Path

import httpx

from ppe_runtime.cli import build_engine, main
from ppe_runtime.config import RuntimeConfig
from ppe_runtime.observability import LoggingObserver


def _write(path: Path, text: str) -> Path:
    path.write_text(text, encoding="utf-8")
    return path


def test_parse_prints_script_as_json(tmp_path: Path, capsys) -> None:
    script = _write(tmp_path / "hello.ai.yaml", "---\nparameters:\n  name: World\n---\nuser: Hello {{name}}\n")
    assert main(["parse", str(script)]) == 0
    data = json.loads(capsys.readouterr().out)
    assert data["parameters"] == {"name": "World"}
    assert data["turns"][0]["messages"][0]["role"] == "user"


def test_parse_missing_file_fails(tmp_path: Path, capsys) -> None:
    assert main(["parse", str(tmp_path / "nope.ai.yaml")]) == 1
    assert "Failed to parse" in capsys.readouterr().err


def test_run_prints_output_and_final_result(tmp_path: Path, capsys, monkeypatch) -> None:
    monkeypatch.delenv("PPE_API_KEYS", raising=False)
    script = _write(tmp_path / "greet.ai.yaml", "---\n---\n$echo: Hi {{name}} ({{tone}})\n")
    rc = main(["run", str(script), "--param", "name=Ada", "--params", '{"tone": "warm"}'])
    assert rc == 0
    out = capsys.readouterr().out.splitlines()
    assert out == ["Hi Ada (warm)", "Hi Ada (warm)"]


def test_run_failure_reports_category_and_suggestion(tmp_path: Path, capsys, monkeypatch) -> None:
    class ClientStub:
        def __init__(self, timeout=None):
            pass

        def __enter__(self):
            return self

        def __exit__(self, exc_type, exc, tb):
            return False

        def post(self, url, json=None, headers=None):
            return httpx.Response(401, text="invalid api key")

    monkeypatch.setattr(httpx, "Client", ClientStub)
    monkeypatch.setenv("PPE_API_KEYS", "bad-key")
    script = _write(tmp_path / "ask.ai.yaml", "---\n---\nuser: hi\n")

    rc = main(["--provider", "openai", "run", str(script)])

    assert rc == 1
    err = capsys.readouterr().err
    assert "AUTH: Authentication failed" in err


def test_run_with_unknown_provider_is_a_config_error(tmp_path: Path, capsys) -> None:
    script = _write(tmp_path / "a.ai.yaml", "---\n---\n")
    assert main(["--provider", "bogus", "run", str(script)]) == 1
    assert "Configuration error" in capsys.readouterr().err


def test_build_engine_wires_every_config_setting(tmp_path: Path) -> None:
    config = RuntimeConfig(
        provider="ollama",
        model="llama3",
        api_keys=["k"],
        ollama_url="http://gpu-box:11434",
        script_path=[tmp_path],
        max_retries=2,
        cache_ttl=30,
    )
    engine = build_engine(config)

    assert engine.model == "llama3"
    assert engine.client.max_retries == 2
    assert engine.client.adapter.base_url == "http://gpu-box:11434"
    assert len(engine.client.credentials) == 1
    assert isinstance(engine.observer, LoggingObserver)
    assert engine.loader.search_paths == [tmp_path]
    assert engine.loader.ttl == 30
