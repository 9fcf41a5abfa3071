"""Automation rules engine.

Every decoded inbound payload is offered to the engine; each rule whose
trigger condition matches sends its action command to its target device.

Condition language
------------------
Deliberately narrow: one numeric comparison against a top-level payload
field::

    payload.<field> <op> <number>      op ∈ {>, <, ===}

Both sides are coerced to float.  The text is parsed once, when the rule is
created; malformed text raises ``InvalidConditionError``.  At evaluation time
a missing field or a non-numeric value (booleans included) makes the
condition false, never an error.

Evaluation semantics
--------------------
- Rules are evaluated in insertion order.  Replacing a rule keeps its slot.
- There is no priority or conflict resolution.  When two rules fired by the
  same event send the same command name to the same device, a warning is
  logged and both are dispatched.
- A failing action (unknown target, encryption or publish error) is logged
  and does not stop the remaining rules.

Concurrency
-----------
The rule set is copy-on-write: ``add_rule``/``remove_rule`` build a new dict
under a lock and swap the reference; ``evaluate`` reads the reference once,
so it always sees a complete rule set.
"""

from __future__ import annotations

import json
import math
import re
import threading
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Iterable

from loguru import logger

from homehub.engine.commands import Command, CommandPublisher
from homehub.engine.errors import InvalidConditionError
from homehub.engine.registry import DeviceRecord


# ---------------------------------------------------------------------------
# Conditions
# ---------------------------------------------------------------------------

class ComparisonOp(str, Enum):
    """Operators for condition evaluation."""
    GT = ">"
    LT = "<"
    EQ = "==="


_OP_FUNCS: dict[str, Callable[[float, float], bool]] = {
    ComparisonOp.GT: lambda a, b: a > b,
    ComparisonOp.LT: lambda a, b: a < b,
    ComparisonOp.EQ: lambda a, b: a == b,
}

# Numeric literal accepted both in condition text and in string payload values
_NUMBER = r"[+-]?(?:\d+(?:\.\d*)?|\.\d+)(?:[eE][+-]?\d+)?"
_NUMBER_RE = re.compile(_NUMBER)

_CONDITION_RE = re.compile(
    r"^\s*payload\.(?P<field>[A-Za-z_][A-Za-z0-9_]*)"
    r"\s*(?P<op>===|>|<)\s*"
    rf"(?P<value>{_NUMBER})\s*$"
)


def _to_float(value: Any) -> float | None:
    """Coerce a payload value to a finite float; None if it is not numeric."""
    if isinstance(value, bool):
        return None
    if isinstance(value, str):
        value = value.strip()
        if not _NUMBER_RE.fullmatch(value):
            return None
    elif not isinstance(value, (int, float)):
        return None
    try:
        result = float(value)
    except (ValueError, OverflowError):
        return None
    return result if math.isfinite(result) else None


def _format_number(value: float) -> str:
    """Shortest text that parses back to exactly *value*."""
    if value.is_integer() and abs(value) < 1e16:
        return str(int(value))
    return repr(value)


@dataclass(frozen=True)
class Comparison:
    """A parsed ``payload.<field> <op> <value>`` condition."""

    field: str
    operator: ComparisonOp
    value: float

    def matches(self, payload: dict[str, Any]) -> bool:
        if not isinstance(payload, dict) or self.field not in payload:
            return False
        actual = _to_float(payload[self.field])
        if actual is None:
            return False
        return _OP_FUNCS[self.operator](actual, self.value)

    def __str__(self) -> str:
        return f"payload.{self.field} {self.operator.value} {_format_number(self.value)}"


def parse_condition(text: str) -> Comparison:
    """Parse condition text into a ``Comparison``.

    Raises ``InvalidConditionError`` when the text does not follow the
    grammar.
    """
    m = _CONDITION_RE.match(text or "")
    if m is None:
        raise InvalidConditionError(
            f"cannot parse condition {text!r}; expected 'payload.<field> <op> <number>' "
            f"with op one of {[op.value for op in ComparisonOp]}"
        )
    value = float(m.group("value"))
    if not math.isfinite(value):
        raise InvalidConditionError(f"condition {text!r} compares against a non-finite number")
    return Comparison(
        field=m.group("field"),
        operator=ComparisonOp(m.group("op")),
        value=value,
    )


# ---------------------------------------------------------------------------
# Rules
# ---------------------------------------------------------------------------

@dataclass
class AutomationRule:
    """A condition → command rule.

    Examples
    --------
    "If any device reports temperature > 28, switch the fan on":
        AutomationRule.create(
            rule_id="hot-fan",
            name="Fan when hot",
            trigger_condition="payload.temperature > 28",
            action_device_id="fan-01",
            action_command=Command("setPower", {"on": True}),
        )
    """
    id: str
    name: str
    condition: Comparison
    action_device_id: str
    action_command: Command
    enabled: bool = True

    @classmethod
    def create(
        cls,
        rule_id: str,
        name: str,
        trigger_condition: str,
        action_device_id: str,
        action_command: Command,
        *,
        enabled: bool = True,
    ) -> AutomationRule:
        """Build a rule from condition text (parsed here, once)."""
        if not rule_id:
            raise ValueError("rule id must not be empty")
        if not action_device_id:
            raise ValueError(f"rule {rule_id!r} has no action device")
        return cls(
            id=rule_id,
            name=name,
            condition=parse_condition(trigger_condition),
            action_device_id=action_device_id,
            action_command=action_command,
            enabled=enabled,
        )

    @property
    def trigger_condition(self) -> str:
        return str(self.condition)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "triggerCondition": self.trigger_condition,
            "actionDeviceId": self.action_device_id,
            "actionCommand": self.action_command.to_dict(),
            "enabled": self.enabled,
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> AutomationRule:
        return cls.create(
            rule_id=d["id"],
            name=d.get("name", ""),
            trigger_condition=d["triggerCondition"],
            action_device_id=d["actionDeviceId"],
            action_command=Command.from_dict(d["actionCommand"]),
            enabled=d.get("enabled", True),
        )


# Callback for fired rules: (rule, triggering device)
RuleFiredCallback = Callable[[AutomationRule, DeviceRecord], Any]


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class RuleEngine:
    """Holds the active rules and evaluates them against inbound payloads."""

    def __init__(self, publisher: CommandPublisher, *, log: Any = None):
        self._publisher = publisher
        self._log = log or logger
        self._rules: dict[str, AutomationRule] = {}   # replaced, never mutated
        self._write_lock = threading.Lock()
        self._fired_callbacks: list[RuleFiredCallback] = []

    # -- rule set ------------------------------------------------------------

    def add_rule(self, rule: AutomationRule) -> None:
        """Insert a rule, or replace the rule with the same id in place."""
        with self._write_lock:
            replaced = rule.id in self._rules
            rules = dict(self._rules)
            rules[rule.id] = rule
            self._rules = rules
        if replaced:
            self._log.warning(f"[Automation] replaced rule '{rule.id}' ({rule.name})")
        else:
            self._log.info(
                f"[Automation] added rule '{rule.id}' ({rule.name}): "
                f"IF {rule.trigger_condition} THEN {rule.action_command.name} "
                f"-> {rule.action_device_id}"
            )

    def remove_rule(self, rule_id: str) -> bool:
        """Remove a rule. Returns False (with a warning) if it did not exist."""
        with self._write_lock:
            if rule_id not in self._rules:
                removed = False
            else:
                rules = dict(self._rules)
                del rules[rule_id]
                self._rules = rules
                removed = True
        if removed:
            self._log.info(f"[Automation] removed rule '{rule_id}'")
        else:
            self._log.warning(f"[Automation] cannot remove rule '{rule_id}': not found")
        return removed

    def get_rule(self, rule_id: str) -> AutomationRule | None:
        return self._rules.get(rule_id)

    def list_rules(self) -> list[AutomationRule]:
        """Return all rules in evaluation order."""
        return list(self._rules.values())

    @property
    def rule_count(self) -> int:
        return len(self._rules)

    # -- loading -------------------------------------------------------------

    def load_rule_dicts(self, items: Iterable[dict[str, Any]]) -> int:
        """Add rules from plain dicts; malformed entries are logged and skipped.

        Returns the number of rules added.
        """
        count = 0
        for d in items:
            try:
                self.add_rule(AutomationRule.from_dict(d))
                count += 1
            except (KeyError, TypeError, ValueError, InvalidConditionError) as exc:
                self._log.warning(f"[Automation] skipping malformed rule {d!r}: {exc}")
        return count

    def load_rules(self, path: str | Path) -> int:
        """Load rules from a JSON file ``{"rules": [...]}``. Missing file → 0."""
        path = Path(path)
        if not path.exists():
            self._log.debug(f"[Automation] no rules file at {path}")
            return 0
        try:
            text = path.read_text(encoding="utf-8").strip()
            if not text:
                return 0
            data = json.loads(text)
        except (json.JSONDecodeError, OSError) as exc:
            self._log.error(f"[Automation] failed to load {path}: {exc}")
            return 0
        count = self.load_rule_dicts(data.get("rules", []))
        self._log.info(f"[Automation] loaded {count} rules from {path}")
        return count

    # -- listeners -----------------------------------------------------------

    def on_rule_fired(self, callback: RuleFiredCallback) -> None:
        """Register a callback receiving ``(rule, device)`` after a dispatch."""
        self._fired_callbacks.append(callback)

    def _notify_fired(self, rule: AutomationRule, device: DeviceRecord) -> None:
        for cb in self._fired_callbacks:
            try:
                cb(rule, device)
            except Exception as exc:
                self._log.error(f"[Automation] rule-fired callback error: {exc}")

    # -- evaluation ----------------------------------------------------------

    def matching_rules(self, payload: dict[str, Any]) -> list[AutomationRule]:
        """Return enabled rules whose condition matches *payload*, in order."""
        rules = self._rules  # one snapshot for the whole pass
        matched: list[AutomationRule] = []
        for rule in rules.values():
            if not rule.enabled:
                continue
            try:
                hit = rule.condition.matches(payload)
            except Exception as exc:
                self._log.error(f"[Automation] rule '{rule.id}' condition check failed: {exc!r}")
                continue
            if hit:
                matched.append(rule)
        return matched

    async def evaluate(
        self,
        device: DeviceRecord,
        payload: dict[str, Any],
    ) -> list[str]:
        """Evaluate all rules and dispatch the matching actions.

        Returns the ids of rules whose command was published successfully.
        """
        matched = self.matching_rules(payload)
        if not matched:
            return []

        self._warn_conflicts(matched, device)

        fired: list[str] = []
        for rule in matched:
            self._log.info(
                f"[Automation] rule '{rule.name}' ({rule.id}) FIRED, "
                f"triggered by device '{device.id}'"
            )
            try:
                await self._publisher.publish(
                    rule.action_device_id,
                    rule.action_command,
                    requested_by=f"rule:{rule.id}",
                )
            except Exception as exc:
                self._log.error(
                    f"[Automation] rule '{rule.id}' action "
                    f"{rule.action_command.name} -> {rule.action_device_id} failed: {exc}"
                )
                continue
            fired.append(rule.id)
            self._notify_fired(rule, device)
        return fired

    def _warn_conflicts(self, matched: list[AutomationRule], device: DeviceRecord) -> None:
        seen: dict[tuple[str, str], str] = {}
        for rule in matched:
            key = (rule.action_device_id, rule.action_command.name)
            if key in seen:
                self._log.warning(
                    f"[Automation] rules '{seen[key]}' and '{rule.id}' both send "
                    f"{key[1]!r} to {key[0]} for one event from {device.id}"
                )
            else:
                seen[key] = rule.id
