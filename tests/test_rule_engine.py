"""Tests for the rule engine: matching, ordering and reload."""

import threading

import pytest
from conftest import make_rule

from guardchat.errors import RuleConfigurationError
from guardchat.rules.engine import CompiledRule, RuleEngine, RuleSet, compile_rule
from guardchat.telemetry import InMemoryTelemetrySink


class TestMatching:
    def test_keyword_list_warns_case_insensitively(self):
        engine = RuleEngine([make_rule(name="salarios", pattern="salario,sueldo", action="warn")])
        verdict = engine.check_input("Cual es el SUELDO del gerente?")
        assert verdict is not None
        assert not verdict.blocked
        assert verdict.action == "warn"
        assert verdict.matched_text == "sueldo"
        assert "Advertencia" in verdict.reason
        assert verdict.reason == "Advertencia de seguridad: salarios"

    def test_regex_blocks_input(self):
        engine = RuleEngine([
            make_rule(name="sql_injection", kind="regex", pattern="(?i)drop table",
                      applies_to="input", severity="critical"),
        ])
        verdict = engine.check_input("please DROP TABLE users;")
        assert verdict is not None
        assert verdict.blocked
        assert verdict.matched_text == "DROP TABLE"
        assert verdict.reason == "Contenido bloqueado por politica de seguridad: sql_injection"

    def test_direction_scope_respected(self):
        engine = RuleEngine([
            make_rule(name="sql_injection", kind="regex", pattern="(?i)drop table", applies_to="input"),
        ])
        assert engine.check_output("DROP TABLE users") is None

    def test_category_label_substring(self):
        engine = RuleEngine([make_rule(name="conf", kind="category", pattern="Confidencial", action="log")])
        verdict = engine.check_output("Este documento es CONFIDENCIAL.")
        assert verdict is not None
        assert verdict.matched_text == "Confidencial"
        assert verdict.reason == "Contenido registrado: conf"

    def test_empty_regex_match_is_not_a_match(self):
        engine = RuleEngine([make_rule(kind="regex", pattern="x*")])
        assert engine.check_input("abc") is None
        verdict = engine.check_input("xxb")
        assert verdict is not None
        assert verdict.matched_text == "xx"

    def test_regex_rule_without_pattern_never_matches(self):
        compiled = CompiledRule(rule=make_rule(kind="regex", pattern="x"))
        assert compiled.match("xxx", "xxx") is None

    def test_no_match_returns_none(self):
        engine = RuleEngine([make_rule(pattern="secreto")])
        assert engine.check_input("hola mundo") is None

    def test_empty_text_allowed(self):
        engine = RuleEngine([make_rule(kind="regex", pattern=".*")])
        assert engine.check_input("") is None

    def test_disabled_engine_allows_everything(self):
        engine = RuleEngine([make_rule(pattern="secreto")], enabled=False)
        assert engine.check_input("esto es secreto") is None


class TestOrdering:
    def test_higher_severity_wins(self):
        engine = RuleEngine([
            make_rule(name="a_low", pattern="clave", action="log", severity="low", rule_id=1),
            make_rule(name="z_critical", pattern="clave", action="block", severity="critical", rule_id=2),
        ])
        verdict = engine.check_input("mi clave")
        assert verdict is not None
        assert verdict.rule_name == "z_critical"

    def test_equal_severity_ordered_by_name(self):
        engine = RuleEngine([
            make_rule(name="beta", pattern="clave", action="block", rule_id=1),
            make_rule(name="alpha", pattern="clave", action="warn", rule_id=2),
        ])
        verdict = engine.check_input("mi clave")
        assert verdict is not None
        assert verdict.rule_name == "alpha"

    def test_ruleset_order(self):
        engine = RuleEngine([
            make_rule(name="m", severity="medium", rule_id=1),
            make_rule(name="h", severity="high", rule_id=2),
            make_rule(name="c", severity="critical", rule_id=3),
            make_rule(name="l", severity="low", rule_id=4),
        ])
        assert engine.ruleset.names == ["c", "h", "m", "l"]


class TestCompilation:
    def test_invalid_regex_raises(self):
        with pytest.raises(RuleConfigurationError, match="broken"):
            compile_rule(make_rule(name="broken", kind="regex", pattern="(unclosed"))

    def test_empty_keyword_list_raises(self):
        with pytest.raises(RuleConfigurationError):
            compile_rule(make_rule(pattern=" , ,"))

    def test_invalid_rule_skipped_others_load(self):
        engine = RuleEngine([
            make_rule(name="broken", kind="regex", pattern="(unclosed", rule_id=1),
            make_rule(name="ok", pattern="secreto", rule_id=2),
        ])
        assert engine.ruleset.names == ["ok"]
        assert engine.ruleset.skipped == ("broken",)
        assert engine.check_input("un secreto") is not None

    def test_inactive_rules_ignored(self):
        engine = RuleEngine([make_rule(active=False)])
        assert len(engine.ruleset) == 0

    def test_duplicate_names_keep_first(self):
        engine = RuleEngine([
            make_rule(name="dup", pattern="uno", rule_id=1),
            make_rule(name="dup", pattern="dos", rule_id=2),
        ])
        assert len(engine.ruleset) == 1
        assert engine.check_input("dos") is None
        assert engine.check_input("uno") is not None


class TestReload:
    def test_reload_swaps_snapshot(self):
        sink = InMemoryTelemetrySink()
        engine = RuleEngine([make_rule(pattern="viejo")], telemetry_sink=sink)
        before = engine.ruleset
        result = engine.reload([make_rule(pattern="nuevo")])
        assert isinstance(result, RuleSet)
        assert engine.ruleset is result
        assert engine.ruleset is not before
        assert engine.check_input("viejo") is None
        assert engine.check_input("nuevo") is not None
        assert sink.names() == ["rules.reload", "rules.reload"]
        assert sink.of("rules.reload")[-1].attributes["loaded"] == 1

    def test_empty_engine_allows(self):
        assert RuleEngine().check_input("anything") is None

    def test_concurrent_checks_during_reload(self):
        engine = RuleEngine([make_rule(pattern="secreto")])
        errors: list[Exception] = []

        def reader():
            try:
                for _ in range(200):
                    verdict = engine.check_input("un secreto")
                    assert verdict is None or verdict.rule_name == "test_rule"
            except Exception as exc:  # noqa: BLE001
                errors.append(exc)

        threads = [threading.Thread(target=reader) for _ in range(4)]
        for t in threads:
            t.start()
        for _ in range(50):
            engine.reload([make_rule(pattern="secreto")])
            engine.reload([])
        for t in threads:
            t.join()
        assert errors == []
