"""CLI entry point: python -m guardchat <command>."""

from __future__ import annotations

import argparse
import asyncio
import dataclasses
import json
import logging
import sys

from guardchat.config import Settings


def _settings(args: argparse.Namespace) -> Settings:
    settings = Settings.from_env()
    overrides = {
        "ollama_url": getattr(args, "url", None),
        "db_path": getattr(args, "db", None),
        "rules_path": getattr(args, "rules", None),
    }
    overrides = {k: v for k, v in overrides.items() if v}
    return dataclasses.replace(settings, **overrides) if overrides else settings


def _build_service(settings: Settings):
    from guardchat.service import ChatService
    from guardchat.store import InMemoryStore, SQLiteStore
    from guardchat.telemetry import LoggerTelemetrySink

    store = SQLiteStore.open(settings.db_path) if settings.db_path != ":memory:" else InMemoryStore()
    return ChatService.from_settings(settings, store, telemetry_sink=LoggerTelemetrySink())


def _run_check(args: argparse.Namespace) -> None:
    from guardchat.rules import RuleEngine, load_rules

    engine = RuleEngine(load_rules(args.rules))
    verdict = engine.check(args.direction, args.text)
    if verdict is None:
        print(json.dumps({"allowed": True}))
        return
    print(json.dumps({"allowed": not verdict.blocked, **dataclasses.asdict(verdict)}, ensure_ascii=False))
    if verdict.blocked:
        sys.exit(2)


def _run_models(settings: Settings) -> None:
    from guardchat.errors import UpstreamError
    from guardchat.llm import InferenceClient
    from guardchat.rules import RuleEngine

    async def _list() -> None:
        async with InferenceClient(settings, RuleEngine()) as client:
            for model in await client.list_models():
                marker = "*" if model.name == client.get_model() else " "
                print(f"{marker} {model.name}")

    try:
        asyncio.run(_list())
    except UpstreamError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        prog="guardchat",
        description="Policy-filtered chat gateway for a local inference server",
    )
    sub = parser.add_subparsers(dest="command")

    ck = sub.add_parser("check", help="Evaluate text against filter rules")
    ck.add_argument("--rules", required=True, help="Rules YAML file or directory")
    ck.add_argument("--direction", choices=["input", "output"], default="input")
    ck.add_argument("text", help="Text to evaluate")

    md = sub.add_parser("models", help="List models on the inference server")
    md.add_argument("--url", default="", help="Inference server URL override")

    ch = sub.add_parser("chat", help="Interactive streaming chat")
    ch.add_argument("--rules", default="", help="Rules YAML file or directory")
    ch.add_argument("--model", default="", help="Model for this session's conversations")
    ch.add_argument("--db", default="", help="SQLite database path (':memory:' for none)")
    ch.add_argument("--url", default="", help="Inference server URL override")

    sv = sub.add_parser("serve", help="Run the HTTP API")
    sv.add_argument("--host", default="127.0.0.1")
    sv.add_argument("--port", type=int, default=8080)
    sv.add_argument("--rules", default="", help="Rules YAML file or directory")
    sv.add_argument("--db", default="", help="SQLite database path")
    sv.add_argument("--url", default="", help="Inference server URL override")

    args = parser.parse_args(argv)
    if args.command is None:
        parser.print_help()
        sys.exit(1)

    settings = _settings(args)
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.command == "check":
        _run_check(args)
    elif args.command == "models":
        _run_models(settings)
    elif args.command == "chat":
        from guardchat.cli.chat import run_chat
        run_chat(_build_service(settings), args)
    elif args.command == "serve":
        import uvicorn

        from guardchat.api import create_app
        uvicorn.run(create_app(_build_service(settings)), host=args.host, port=args.port)


if __name__ == "__main__":
    main()
