"""Content-policy rule engine.

Rules are compiled once per reload into an immutable :class:`RuleSet`
ordered by severity (critical first) and then by name.  ``check`` walks that
order and stops at the first matching rule; there is no aggregation.

Readers take a single reference to the current RuleSet and never lock.
``reload`` builds a complete replacement before swapping the reference
under a short lock, so a concurrent ``check`` sees either the old or the
new snapshot, never a partial one.
"""

from __future__ import annotations

import logging
import re
import threading
import time
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field

from guardchat.errors import RuleConfigurationError
from guardchat.models import SEVERITY_RANK, Direction, FilterRule, Verdict
from guardchat.telemetry import NoOpTelemetrySink, TelemetryEvent, TelemetrySink

logger = logging.getLogger(__name__)

_REASON_PREFIX: dict[str, str] = {
    "block": "Contenido bloqueado por politica de seguridad: ",
    "warn": "Advertencia de seguridad: ",
    "log": "Contenido registrado: ",
}


def _split_keywords(pattern: str) -> tuple[str, ...]:
    terms = (term.strip() for term in pattern.lower().split(","))
    return tuple(term for term in terms if term)


@dataclass(frozen=True)
class CompiledRule:
    """A FilterRule with its matcher prepared."""

    rule: FilterRule
    regex: re.Pattern[str] | None = None
    keywords: tuple[str, ...] = ()
    label: str = ""

    def match(self, text: str, text_lower: str) -> str | None:
        """Return the matched text, or None when the rule does not fire."""
        kind = self.rule.kind
        if kind == "keyword":
            for keyword in self.keywords:
                if keyword in text_lower:
                    return keyword
            return None
        if kind == "regex":
            if self.regex is None:
                return None
            found = self.regex.search(text)
            # An empty match carries no evidence; treat it as no match.
            if found is None or not found.group(0):
                return None
            return found.group(0)
        if self.label and self.label in text_lower:
            return self.rule.pattern
        return None


def compile_rule(rule: FilterRule) -> CompiledRule:
    """Prepare *rule* for matching.

    Raises:
        RuleConfigurationError: the regex does not compile, or a keyword
            rule has no usable terms.
    """
    if rule.kind == "regex":
        try:
            return CompiledRule(rule=rule, regex=re.compile(rule.pattern))
        except re.error as exc:
            raise RuleConfigurationError(rule.name, str(exc)) from exc
    if rule.kind == "keyword":
        keywords = _split_keywords(rule.pattern)
        if not keywords:
            raise RuleConfigurationError(rule.name, "keyword list is empty")
        return CompiledRule(rule=rule, keywords=keywords)
    return CompiledRule(rule=rule, label=rule.pattern.strip().lower())


def _sort_key(compiled: CompiledRule) -> tuple[int, str]:
    return (-SEVERITY_RANK[compiled.rule.severity], compiled.rule.name)


@dataclass(frozen=True)
class RuleSet:
    """Immutable, ordered snapshot of the active rules."""

    rules: tuple[CompiledRule, ...] = ()
    skipped: tuple[str, ...] = ()
    loaded_at: float = field(default_factory=time.time)

    @classmethod
    def build(
        cls, compiled: Iterable[CompiledRule], skipped: Iterable[str] = ()
    ) -> RuleSet:
        return cls(rules=tuple(sorted(compiled, key=_sort_key)), skipped=tuple(skipped))

    def __iter__(self) -> Iterator[CompiledRule]:
        return iter(self.rules)

    def __len__(self) -> int:
        return len(self.rules)

    @property
    def names(self) -> list[str]:
        return [compiled.rule.name for compiled in self.rules]


def _verdict(rule: FilterRule, matched_text: str) -> Verdict:
    return Verdict(
        rule_id=rule.id,
        rule_name=rule.name,
        action=rule.action,
        severity=rule.severity,
        blocked=rule.action == "block",
        reason=_REASON_PREFIX[rule.action] + rule.name,
        matched_text=matched_text,
    )


class RuleEngine:
    """Evaluates text against the current RuleSet."""

    def __init__(
        self,
        rules: Iterable[FilterRule] | None = None,
        *,
        enabled: bool = True,
        telemetry_sink: TelemetrySink | None = None,
    ) -> None:
        self.enabled = enabled
        self.telemetry = telemetry_sink or NoOpTelemetrySink()
        self._swap_lock = threading.Lock()
        self._ruleset = RuleSet()
        if rules is not None:
            self.reload(rules)

    @property
    def ruleset(self) -> RuleSet:
        return self._ruleset

    def reload(self, rules: Iterable[FilterRule]) -> RuleSet:
        """Compile *rules* and install them as the new snapshot.

        Inactive rules are ignored.  A rule that fails to compile, or that
        repeats an earlier rule's name, is logged and left out; the rest of
        the load proceeds.
        """
        compiled: list[CompiledRule] = []
        skipped: list[str] = []
        seen: set[str] = set()

        for rule in rules:
            if not rule.active:
                continue
            if rule.name in seen:
                logger.warning("Duplicate filter rule name '%s' ignored", rule.name)
                skipped.append(rule.name)
                continue
            try:
                compiled.append(compile_rule(rule))
            except RuleConfigurationError as exc:
                logger.warning("Skipping filter rule: %s", exc)
                skipped.append(rule.name)
                continue
            seen.add(rule.name)

        ruleset = RuleSet.build(compiled, skipped)
        with self._swap_lock:
            self._ruleset = ruleset

        logger.info("Loaded %d active security filters (%d skipped)", len(ruleset), len(skipped))
        self.telemetry.emit(
            TelemetryEvent(
                name="rules.reload",
                attributes={"loaded": len(ruleset), "skipped": list(skipped)},
            )
        )
        return ruleset

    def check(self, direction: Direction, text: str) -> Verdict | None:
        """Return the verdict of the first matching rule, or None if allowed."""
        if not self.enabled or not text:
            return None

        ruleset = self._ruleset
        text_lower = text.lower()
        for compiled in ruleset:
            if not compiled.rule.applies(direction):
                continue
            try:
                matched = compiled.match(text, text_lower)
            except Exception:
                logger.exception("Filter rule '%s' failed during matching", compiled.rule.name)
                continue
            if matched is not None:
                return _verdict(compiled.rule, matched)
        return None

    def check_input(self, text: str) -> Verdict | None:
        return self.check("input", text)

    def check_output(self, text: str) -> Verdict | None:
        return self.check("output", text)
