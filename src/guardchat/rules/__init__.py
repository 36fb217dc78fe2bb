"""Rule subsystem -- declarative content-policy rules and their evaluation."""

from guardchat.rules.engine import CompiledRule, RuleEngine, RuleSet, compile_rule
from guardchat.rules.loader import (
    load_rules,
    load_rules_directory,
    load_rules_file,
    parse_rules,
)

__all__ = [
    "CompiledRule",
    "RuleEngine",
    "RuleSet",
    "compile_rule",
    "load_rules",
    "load_rules_directory",
    "load_rules_file",
    "parse_rules",
]
