"""
Alarm Engine
============
Evaluates alarm rule conditions against the final registers of every tick
and dispatches the rule's actions exactly once per INACTIVE → ACTIVE edge.

    INACTIVE ──(condition true)──▶ ACTIVE   (actions fire, in list order)
    ACTIVE ──(condition false | rule disabled)──▶ INACTIVE

ACTIONS:
  notification  fire-and-forget, reported to the UI callback
  buzzer        fire-and-forget, reported to the UI callback
  email         delegated to an external sender, never retried
  shutdown      invokes the owning engine's shutdown hook

A failing action raises ActionDispatchError inside the dispatcher; it is
logged, recorded on the ActionEvent, and the remaining actions still fire.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from loguru import logger

from sim_config.errors import ActionDispatchError, ExpressionError
from sim_config.ontology import ActionType, AlarmAction, AlarmRule, AlarmSeverity, RuntimeState
from .expressions import ExpressionEvaluator, default_evaluator

EmailSender = Callable[[AlarmRule, AlarmAction], None]
RuleCallback = Callable[[AlarmRule, AlarmAction], None]


@dataclass
class AlarmRuntime:
    rule_id: str
    state: RuntimeState = RuntimeState.INACTIVE
    activated_at: Optional[datetime] = None
    activation_count: int = 0

    @property
    def active(self) -> bool:
        return self.state == RuntimeState.ACTIVE


@dataclass
class ActionEvent:
    """Record of one dispatched alarm action, readable by the UI layer."""
    timestamp: datetime
    rule_id: str
    rule_name: str
    severity: AlarmSeverity
    action: ActionType
    delivered: bool = True
    error: str = ""

    def to_dict(self) -> dict:
        return {
            "timestamp": self.timestamp.isoformat(),
            "ruleId": self.rule_id,
            "ruleName": self.rule_name,
            "severity": self.severity.value,
            "action": self.action.value,
            "delivered": self.delivered,
            "error": self.error,
        }


class ActionDispatcher:
    """Runs alarm actions in order; one failing action never blocks the rest."""

    def __init__(self, email_sender: Optional[EmailSender] = None,
                 on_notification: Optional[RuleCallback] = None,
                 on_buzzer: Optional[RuleCallback] = None,
                 on_shutdown: Optional[Callable[[AlarmRule], None]] = None):
        self.email_sender = email_sender
        self.on_notification = on_notification
        self.on_buzzer = on_buzzer
        self.on_shutdown = on_shutdown
        self.events: list[ActionEvent] = []

    def dispatch(self, rule: AlarmRule, timestamp: datetime) -> list[ActionEvent]:
        dispatched = []
        for action in rule.actions:
            event = ActionEvent(timestamp=timestamp, rule_id=rule.id, rule_name=rule.name,
                                severity=rule.severity, action=action.type)
            try:
                self._dispatch_one(rule, action)
            except ActionDispatchError as exc:
                event.delivered = False
                event.error = str(exc)
                logger.error(f"Alarm '{rule.name or rule.id}' action {action.type.value} failed: {exc}")
            dispatched.append(event)
        self.events.extend(dispatched)
        return dispatched

    def _dispatch_one(self, rule: AlarmRule, action: AlarmAction):
        label = rule.name or rule.id
        if action.type == ActionType.NOTIFICATION:
            logger.warning(f"NOTIFICATION [{rule.severity.value}]: {label}")
            self._callback(self.on_notification, rule, action)
        elif action.type == ActionType.BUZZER:
            logger.warning(f"BUZZER [{rule.severity.value}]: {label} triggered")
            self._callback(self.on_buzzer, rule, action)
        elif action.type == ActionType.EMAIL:
            if self.email_sender is None:
                raise ActionDispatchError("no email sender configured", rule.id, action.type.value)
            self._callback(self.email_sender, rule, action)
            logger.info(f"Email for alarm '{label}' handed to sender ({action.config.get('to', 'default recipients')})")
        elif action.type == ActionType.SHUTDOWN:
            logger.critical(f"SHUTDOWN requested by alarm '{label}'")
            if self.on_shutdown is not None:
                self.on_shutdown(rule)

    @staticmethod
    def _callback(callback: Optional[RuleCallback], rule: AlarmRule, action: AlarmAction):
        if callback is None:
            return
        try:
            callback(rule, action)
        except Exception as exc:
            # External collaborators may fail in any way; contain it to this action
            raise ActionDispatchError(f"{type(exc).__name__}: {exc}", rule.id, action.type.value) from exc


class AlarmEngine:
    """Edge-triggered rule evaluation over final tick registers."""

    def __init__(self, dispatcher: Optional[ActionDispatcher] = None,
                 evaluator: Optional[ExpressionEvaluator] = None):
        self.dispatcher = dispatcher or ActionDispatcher()
        self.evaluator = evaluator or default_evaluator()
        self.runtimes: dict[str, AlarmRuntime] = {}
        self.diagnostics: dict[str, str] = {}

    def reset(self):
        self.runtimes.clear()
        self.diagnostics = {}

    def is_active(self, rule_id: str) -> bool:
        rt = self.runtimes.get(rule_id)
        return rt is not None and rt.active

    def active_ids(self) -> list[str]:
        return [rid for rid, rt in self.runtimes.items() if rt.active]

    def evaluate(self, registers: dict[str, float], rules: list[AlarmRule],
                 timestamp: datetime) -> list[str]:
        """Update rule states and fire actions for newly activated rules; returns their ids."""
        known = {r.id for r in rules}
        for rule_id in [rid for rid in self.runtimes if rid not in known]:
            del self.runtimes[rule_id]
        previous, self.diagnostics = self.diagnostics, {}

        activated: list[AlarmRule] = []
        for rule in rules:
            rt = self.runtimes.setdefault(rule.id, AlarmRuntime(rule.id))
            if not rule.enabled:
                rt.state = RuntimeState.INACTIVE
                continue

            try:
                condition = self.evaluator.condition(rule.condition, registers)
            except ExpressionError as exc:
                condition = False
                self.diagnostics[rule.id] = str(exc)
                if previous.get(rule.id) != str(exc):
                    logger.warning(f"Alarm rule '{rule.name or rule.id}' treated as false: {exc}")

            if condition and not rt.active:
                rt.state = RuntimeState.ACTIVE
                rt.activated_at = timestamp
                rt.activation_count += 1
                activated.append(rule)
            elif not condition and rt.active:
                rt.state = RuntimeState.INACTIVE
                logger.info(f"Alarm '{rule.name or rule.id}' cleared")

        for rule in activated:
            logger.info(f"Alarm '{rule.name or rule.id}' ({rule.severity.value}) activated: {rule.condition}")
            self.dispatcher.dispatch(rule, timestamp)

        return [rule.id for rule in activated]
