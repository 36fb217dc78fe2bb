"""Pydantic models for filter rules, messages and conversations, plus verdicts."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

RuleKind = Literal["keyword", "regex", "category"]
RuleAction = Literal["block", "warn", "log"]
Direction = Literal["input", "output"]
AppliesTo = Literal["input", "output", "both"]
Severity = Literal["low", "medium", "high", "critical"]
Role = Literal["system", "user", "assistant"]

SEVERITY_RANK: dict[str, int] = {"low": 0, "medium": 1, "high": 2, "critical": 3}


class _StrictModel(BaseModel):
    """Shared strict model settings for guardchat contracts."""

    model_config = ConfigDict(extra="forbid", validate_assignment=True)


class FilterRule(_StrictModel):
    """One declarative content-policy entry."""

    id: int
    name: str
    kind: RuleKind
    pattern: str
    action: RuleAction
    applies_to: AppliesTo = "both"
    severity: Severity = "medium"
    active: bool = True
    description: str | None = None

    @field_validator("name", "pattern")
    @classmethod
    def require_text(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("must not be empty")
        return value

    @field_validator("name")
    @classmethod
    def strip_name(cls, value: str) -> str:
        return value.strip()

    def applies(self, direction: Direction) -> bool:
        return self.applies_to == "both" or self.applies_to == direction


@dataclass(frozen=True)
class Verdict:
    """Outcome of a rule match.  ``None`` in its place means "allowed"."""

    rule_id: int
    rule_name: str
    action: RuleAction
    severity: Severity
    blocked: bool
    reason: str
    matched_text: str


class Message(_StrictModel):
    role: Role
    content: str
    filtered: bool = False
    filter_reason: str | None = None
    id: int | None = None
    conversation_id: int | None = None
    created_at: datetime | None = None

    def as_wire(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}


class Conversation(_StrictModel):
    id: int
    owner_user_id: int
    title: str = ""
    model_name: str | None = None
    created_at: datetime
    updated_at: datetime


class ModelInfo(BaseModel):
    """A model advertised by the inference server's ``/api/tags``."""

    model_config = ConfigDict(extra="ignore")

    name: str
    modified_at: str | None = None
    size: int = 0


class KnowledgeSnippet(_StrictModel):
    title: str
    category: str | None = None
    content: str


class RequestMeta(_StrictModel):
    """Transport details recorded alongside a policy violation."""

    user_id: int
    client_ip: str = ""
    user_agent: str = ""


class ChatRequest(_StrictModel):
    content: str
    conversation_id: int | None = None
    model: str | None = None


class ChatReply(_StrictModel):
    conversation_id: int | None = None
    response: str = ""
    filtered: bool = False
    filter_reason: str | None = None
    error: str | None = None
    notices: list[str] = Field(default_factory=list)
