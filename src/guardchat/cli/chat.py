"""Interactive streaming chat REPL."""

from __future__ import annotations

import asyncio
from argparse import Namespace

from guardchat.errors import AccessDenied, ValidationError
from guardchat.service import ChatService
from guardchat.stream import StreamFrame

CLI_USER_ID = 1


def _print_help() -> None:
    print("Commands:")
    print("  /model [name]    Show or change the global model")
    print("  /reload          Reload filter rules")
    print("  /health          Check the inference server")
    print("  /new             Start a new conversation")
    print("  /help            Show this help")
    print("  /quit            Exit")
    print()


def _print_frame(frame: StreamFrame) -> None:
    if frame.kind == "token":
        print(frame.data["content"], end="", flush=True)
    elif frame.kind == "heartbeat":
        print(".", end="", flush=True)
    elif frame.kind == "filtered":
        print(f"\n[filtrado] {frame.data['reason']}")
    elif frame.kind == "error":
        print(f"\n[error] {frame.data['error']}")
    elif frame.kind == "done":
        print()


class _ChatState:
    def __init__(self, service: ChatService, model: str | None) -> None:
        self.service = service
        self.model = model
        self.conversation_id: int | None = None


async def _handle_command(state: _ChatState, cmd: str, arg: str) -> bool:
    if cmd in ("/quit", "/exit"):
        return False

    if cmd == "/help":
        _print_help()
    elif cmd == "/model":
        if arg:
            try:
                print(f"Model set: {state.service.set_model(arg)}")
            except ValueError as exc:
                print(f"Error: {exc}")
        else:
            print(f"Current model: {state.service.client.get_model()}")
    elif cmd == "/reload":
        ruleset = state.service.reload_rules()
        print(f"Rules loaded: {len(ruleset)} (skipped: {', '.join(ruleset.skipped) or 'none'})")
    elif cmd == "/health":
        status = await state.service.health()
        label = "available" if status["available"] else "unavailable"
        print(f"Inference server {label} | model: {status['model']}")
    elif cmd == "/new":
        state.conversation_id = None
        print("New conversation.")
    else:
        print(f"Unknown command: {cmd}. Type /help for available commands.")
    print()
    return True


async def _handle_input(state: _ChatState, line: str) -> bool:
    """Handle one line of input. Returns False to quit."""
    stripped = line.strip()
    if not stripped:
        return True

    if stripped.startswith("/"):
        parts = stripped.split(maxsplit=1)
        return await _handle_command(state, parts[0].lower(), parts[1] if len(parts) > 1 else "")

    try:
        frames = await state.service.stream(
            CLI_USER_ID, stripped, conversation_id=state.conversation_id, model=state.model
        )
    except (ValidationError, AccessDenied) as exc:
        print(f"Error: {exc}")
        print()
        return True

    print("ai> ", end="", flush=True)
    async for frame in frames:
        if frame.kind == "start":
            state.conversation_id = frame.data["conversation_id"]
            continue
        _print_frame(frame)
    print()
    return True


def run_chat(service: ChatService, args: Namespace) -> None:
    print()
    print("guardchat")
    print(f"Server: {service.settings.ollama_url} | Model: {args.model or service.client.get_model()}")
    print(f"Filters loaded: {len(service.rule_engine.ruleset)}")
    print("Type /help for commands, /quit to exit.")
    print()

    state = _ChatState(service, args.model or None)

    async def _loop() -> None:
        try:
            while True:
                try:
                    line = input("you> ")
                except (EOFError, KeyboardInterrupt):
                    print()
                    break
                if not await _handle_input(state, line):
                    break
        finally:
            await service.aclose()

    try:
        asyncio.run(_loop())
    except KeyboardInterrupt:
        pass
    print("Goodbye.")
