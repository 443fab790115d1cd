from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

ANY_STATUS = "*"

PayloadCheck = Callable[[Mapping[str, Any]], bool]


@dataclass(frozen=True, slots=True)
class Precondition:
    """Named business rule evaluated against the merged entity payload."""

    name: str
    check: PayloadCheck

    def holds(self, payload: Mapping[str, Any]) -> bool:
        try:
            return bool(self.check(payload))
        except (LookupError, TypeError, ValueError, ArithmeticError):
            # Malformed values cannot satisfy a rule.
            return False


@dataclass(frozen=True, slots=True)
class TransitionRule:
    entity_type: str
    from_status: str
    action: str
    to_status: str
    allowed_roles: frozenset[str]
    required_fields: tuple[str, ...] = ()
    side_effects: tuple[str, ...] = ()
    preconditions: tuple[Precondition, ...] = ()
    allow_from_terminal: bool = False
    increments: tuple[str, ...] = ()

    @property
    def key(self) -> tuple[str, str, str]:
        return (self.entity_type, self.from_status, self.action)

    @property
    def is_wildcard(self) -> bool:
        return self.from_status == ANY_STATUS


@dataclass(frozen=True, slots=True)
class WorkflowDefinition:
    entity_type: str
    label: str
    statuses: tuple[str, ...]
    initial_status: str
    terminal_statuses: frozenset[str]
    rules: tuple[TransitionRule, ...] = field(default_factory=tuple)

    def is_terminal(self, status: str) -> bool:
        return status in self.terminal_statuses

    def validate(self) -> None:
        known = set(self.statuses)
        if len(known) != len(self.statuses):
            raise ValueError(f"{self.entity_type}: duplicate statuses")
        if self.initial_status not in known:
            raise ValueError(f"{self.entity_type}: initial status {self.initial_status} is not declared")
        unknown_terminal = self.terminal_statuses - known
        if unknown_terminal:
            raise ValueError(f"{self.entity_type}: undeclared terminal statuses {sorted(unknown_terminal)}")
        for rule in self.rules:
            if rule.entity_type != self.entity_type:
                raise ValueError(f"{self.entity_type}: rule {rule.action} belongs to {rule.entity_type}")
            if rule.from_status != ANY_STATUS and rule.from_status not in known:
                raise ValueError(f"{self.entity_type}.{rule.action}: unknown from status {rule.from_status}")
            if rule.to_status not in known:
                raise ValueError(f"{self.entity_type}.{rule.action}: unknown to status {rule.to_status}")
            if not rule.allowed_roles:
                raise ValueError(f"{self.entity_type}.{rule.action}: no allowed roles")


class RuleTable:
    """Transition rules keyed by (entity type, from status, action).

    A rule bound to the exact current status wins over a wildcard rule for the
    same action. Registering a second rule for an existing key is an error.
    """

    def __init__(self, definitions: Iterable[WorkflowDefinition] = ()) -> None:
        self._definitions: dict[str, WorkflowDefinition] = {}
        self._rules: dict[tuple[str, str, str], TransitionRule] = {}
        for definition in definitions:
            self.register(definition)

    def register(self, definition: WorkflowDefinition) -> None:
        if definition.entity_type in self._definitions:
            raise ValueError(f"workflow for '{definition.entity_type}' is already registered")
        definition.validate()

        staged: dict[tuple[str, str, str], TransitionRule] = {}
        for rule in definition.rules:
            if rule.key in staged:
                raise ValueError(f"ambiguous transition {rule.key}: more than one rule")
            staged[rule.key] = rule

        self._definitions[definition.entity_type] = definition
        self._rules.update(staged)

    def definition(self, entity_type: str) -> WorkflowDefinition | None:
        return self._definitions.get(entity_type)

    def definitions(self) -> list[WorkflowDefinition]:
        return [self._definitions[name] for name in sorted(self._definitions)]

    def lookup(self, entity_type: str, status: str, action: str) -> TransitionRule | None:
        exact = self._rules.get((entity_type, status, action))
        if exact is not None:
            return exact
        return self._rules.get((entity_type, ANY_STATUS, action))

    def rules_from(self, entity_type: str, status: str) -> list[TransitionRule]:
        definition = self._definitions.get(entity_type)
        if definition is None:
            return []
        by_action: dict[str, TransitionRule] = {}
        for rule in definition.rules:
            if rule.from_status == status:
                by_action[rule.action] = rule
            elif rule.is_wildcard and rule.action not in by_action:
                by_action[rule.action] = rule
        return [by_action[action] for action in sorted(by_action)]
