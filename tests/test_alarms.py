from datetime import datetime

from sim_config.ontology import ActionType, AlarmAction, AlarmRule, AlarmSeverity
from sim_engine.alarms import ActionDispatcher, AlarmEngine

NOW = datetime(2025, 1, 1)


def rule(condition="temperature > 75", actions=(ActionType.NOTIFICATION,), enabled=True, rid="r1"):
    return AlarmRule(id=rid, name=rid, condition=condition, severity=AlarmSeverity.WARNING,
                     actions=[AlarmAction(a) for a in actions], enabled=enabled)


def test_actions_fire_once_per_activation_edge():
    engine = AlarmEngine()
    rules = [rule()]
    assert engine.evaluate({"temperature": 80.0}, rules, NOW) == ["r1"]
    assert engine.evaluate({"temperature": 85.0}, rules, NOW) == []
    assert engine.evaluate({"temperature": 90.0}, rules, NOW) == []
    assert len(engine.dispatcher.events) == 1

    engine.evaluate({"temperature": 70.0}, rules, NOW)
    assert engine.active_ids() == []
    engine.evaluate({"temperature": 80.0}, rules, NOW)
    assert len(engine.dispatcher.events) == 2


def test_actions_fire_in_list_order():
    engine = AlarmEngine()
    engine.evaluate({"temperature": 80.0},
                    [rule(actions=(ActionType.BUZZER, ActionType.NOTIFICATION))], NOW)
    assert [e.action for e in engine.dispatcher.events] == [ActionType.BUZZER, ActionType.NOTIFICATION]


def test_disabled_rule_is_forced_inactive():
    engine = AlarmEngine()
    engine.evaluate({"temperature": 80.0}, [rule()], NOW)
    assert engine.is_active("r1")
    engine.evaluate({"temperature": 80.0}, [rule(enabled=False)], NOW)
    assert not engine.is_active("r1")
    assert len(engine.dispatcher.events) == 1


def test_email_failure_does_not_block_other_actions():
    def broken_sender(rule, action):
        raise RuntimeError("smtp down")

    engine = AlarmEngine(ActionDispatcher(email_sender=broken_sender))
    rules = [rule(actions=(ActionType.EMAIL, ActionType.NOTIFICATION))]
    engine.evaluate({"temperature": 80.0}, rules, NOW)

    email, notification = engine.dispatcher.events
    assert not email.delivered and "smtp down" in email.error
    assert notification.delivered
    assert engine.is_active("r1")

    engine.evaluate({"temperature": 80.0}, rules, NOW)
    assert len(engine.dispatcher.events) == 2


def test_missing_email_sender_is_reported():
    engine = AlarmEngine()
    engine.evaluate({"temperature": 80.0}, [rule(actions=(ActionType.EMAIL,))], NOW)
    (event,) = engine.dispatcher.events
    assert not event.delivered
    assert "email sender" in event.error


def test_callbacks_and_shutdown_hook_receive_rule():
    seen = []
    dispatcher = ActionDispatcher(
        email_sender=lambda r, a: seen.append(("email", r.id, a.config.get("to"))),
        on_notification=lambda r, a: seen.append(("notification", r.id)),
        on_buzzer=lambda r, a: seen.append(("buzzer", r.id)),
        on_shutdown=lambda r: seen.append(("shutdown", r.id)),
    )
    alarm = AlarmRule(id="crit", condition="power > 90 || temperature > 80", severity=AlarmSeverity.CRITICAL,
                      actions=[AlarmAction(ActionType.NOTIFICATION), AlarmAction(ActionType.EMAIL, {"to": "ops"}),
                               AlarmAction(ActionType.BUZZER), AlarmAction(ActionType.SHUTDOWN)])
    AlarmEngine(dispatcher).evaluate({"power": 95.0, "temperature": 20.0}, [alarm], NOW)
    assert seen == [("notification", "crit"), ("email", "crit", "ops"), ("buzzer", "crit"), ("shutdown", "crit")]


def test_bad_condition_counts_as_false():
    engine = AlarmEngine()
    assert engine.evaluate({"temperature": 80.0}, [rule(condition="temperature >")], NOW) == []
    assert "r1" in engine.diagnostics


def test_removed_rules_are_forgotten():
    engine = AlarmEngine()
    engine.evaluate({"temperature": 80.0}, [rule()], NOW)
    engine.evaluate({"temperature": 80.0}, [], NOW)
    assert engine.active_ids() == []
