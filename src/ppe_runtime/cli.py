from __future__ import annotations

import argparse
import dataclasses
import json
import sys
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional

from .config import RuntimeConfig
from .engine import ExecutionEngine
from .errors import PpeError
from .logging import configure_logging
from .observability import LoggingObserver
from .providers import CredentialPool, ProviderClient, ProviderKind
from .script import ScriptLoader, parse_file


def _parse_json(s: str) -> Dict[str, Any]:
    try:
        obj = json.loads(s)
    except Exception as exc:
        raise argparse.ArgumentTypeError(f"invalid JSON: {exc}") from exc
    if not isinstance(obj, dict):
        raise argparse.ArgumentTypeError("expected a JSON object")
    return obj


def _parse_kv(s: str) -> tuple:
    if "=" not in s:
        raise argparse.ArgumentTypeError(f"expected key=value, got {s!r}")
    key, value = s.split("=", 1)
    return key.strip(), value


def _to_jsonable(obj: Any) -> Any:
    if dataclasses.is_dataclass(obj) and not isinstance(obj, type):
        return {f.name: _to_jsonable(getattr(obj, f.name)) for f in dataclasses.fields(obj)}
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, dict):
        return {k: _to_jsonable(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [_to_jsonable(v) for v in obj]
    return obj


def build_engine(config: RuntimeConfig) -> ExecutionEngine:
    kind = ProviderKind.parse(config.provider)
    client = ProviderClient(
        kind,
        credentials=CredentialPool(config.api_keys),
        base_url=config.ollama_url if kind == ProviderKind.OLLAMA else None,
        observer=LoggingObserver(),
        max_retries=config.max_retries,
    )
    return ExecutionEngine(
        client,
        model=config.model,
        loader=ScriptLoader(search_paths=config.script_path, ttl=config.cache_ttl),
        observer=client.observer,
    )


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(prog="ppe-run")
    parser.add_argument("--provider", default=None, help="gemini, openai, anthropic or ollama (defaults to $PPE_PROVIDER)")
    parser.add_argument("--model", default=None, help="Model name (defaults to $PPE_MODEL)")

    sub = parser.add_subparsers(dest="cmd", required=True)

    p_parse = sub.add_parser("parse", help="Parse a script and print its structure as JSON")
    p_parse.add_argument("script", type=Path)
    p_parse.set_defaults(cmd="parse")

    p_run = sub.add_parser("run", help="Execute a script and print its final result")
    p_run.add_argument("script", type=Path)
    p_run.add_argument("--param", action="append", default=[], type=_parse_kv, help="key=value input parameter")
    p_run.add_argument("--params", default="{}", type=_parse_json, help="JSON object of input parameters")
    p_run.add_argument("--provider", default=argparse.SUPPRESS)
    p_run.add_argument("--model", default=argparse.SUPPRESS)
    p_run.set_defaults(cmd="run")

    args = parser.parse_args(argv)
    configure_logging("ppe_runtime")

    if args.cmd == "parse":
        try:
            script = parse_file(args.script)
        except (OSError, PpeError) as exc:
            sys.stderr.write(f"Failed to parse {args.script}: {exc}\n")
            return 1
        print(json.dumps(_to_jsonable(script), indent=2, ensure_ascii=False))
        return 0

    if args.cmd == "run":
        try:
            engine = build_engine(RuntimeConfig.from_env(provider=args.provider, model=args.model))
        except (PpeError, ValueError) as exc:
            sys.stderr.write(f"Configuration error: {exc}\n")
            return 1
        params = dict(args.params)
        params.update(dict(args.param))
        result = engine.execute_file(args.script, params)
        if not result.success:
            sys.stderr.write(f"{result.error}\n")
            return 1
        for line in result.output:
            print(line)
        print(result.final_result)
        return 0

    raise AssertionError("unreachable")


if __name__ == "__main__":
    raise SystemExit(main())
