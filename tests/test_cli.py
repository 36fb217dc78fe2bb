"""Tests for the command-line entry point."""

import json

import pytest

from guardchat.__main__ import main

RULES_YAML = """\
rules:
  - name: sql_injection
    kind: regex
    pattern: "(?i)drop table"
    action: block
    applies_to: input
    severity: critical
  - name: salarios
    kind: keyword
    pattern: "salario,sueldo"
    action: warn
"""


@pytest.fixture
def rules_file(tmp_path):
    path = tmp_path / "rules.yaml"
    path.write_text(RULES_YAML, encoding="utf-8")
    return str(path)


class TestCheckCommand:
    def test_allowed(self, rules_file, capsys):
        main(["check", "--rules", rules_file, "hola"])
        assert json.loads(capsys.readouterr().out) == {"allowed": True}

    def test_warn_is_allowed_with_reason(self, rules_file, capsys):
        main(["check", "--rules", rules_file, "mi sueldo"])
        body = json.loads(capsys.readouterr().out)
        assert body["allowed"] is True
        assert body["reason"] == "Advertencia de seguridad: salarios"

    def test_block_exits_nonzero(self, rules_file, capsys):
        with pytest.raises(SystemExit) as exc_info:
            main(["check", "--rules", rules_file, "DROP TABLE users"])
        assert exc_info.value.code == 2
        body = json.loads(capsys.readouterr().out)
        assert body["allowed"] is False
        assert body["rule_name"] == "sql_injection"

    def test_direction_respected(self, rules_file, capsys):
        main(["check", "--rules", rules_file, "--direction", "output", "DROP TABLE users"])
        assert json.loads(capsys.readouterr().out) == {"allowed": True}


def test_no_command_prints_help(capsys):
    with pytest.raises(SystemExit) as exc_info:
        main([])
    assert exc_info.value.code == 1
    assert "usage" in capsys.readouterr().out


class TestChatRepl:
    @pytest.mark.asyncio
    async def test_message_streams_and_keeps_conversation(self, capsys):
        from conftest import make_service

        from guardchat.cli.chat import _ChatState, _handle_input

        service, _fake, store = make_service()
        state = _ChatState(service, None)
        assert await _handle_input(state, "hola") is True
        assert "Hola, soy AQUILA." in capsys.readouterr().out
        assert state.conversation_id == 1

        await _handle_input(state, "otra vez")
        assert len(store.fetch_history(1)) == 4

    @pytest.mark.asyncio
    async def test_commands(self, capsys):
        from conftest import make_service

        from guardchat.cli.chat import _ChatState, _handle_input

        service, *_ = make_service()
        state = _ChatState(service, None)
        assert await _handle_input(state, "/model llama3:8b") is True
        assert service.client.get_model() == "llama3:8b"
        assert await _handle_input(state, "/health") is True
        assert "available" in capsys.readouterr().out
        assert await _handle_input(state, "/quit") is False
