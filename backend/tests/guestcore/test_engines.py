"""
guestcore.engine tests - rule engine, state machine, saga
"""
import pytest

from guestcore.engine.rule_engine import (
    AlwaysCondition,
    ExpressionCondition,
    Rule,
    RuleContext,
    RuleEngine,
)
from guestcore.engine.saga import Saga
from guestcore.engine.state_machine import StateMachine, StateMachineConfig, StateTransition


def make_rule(rule_id, scope="lodging:entered", action=None, priority=0, condition=None):
    return Rule(
        rule_id=rule_id,
        name=rule_id,
        description="",
        scope=scope,
        condition=condition or AlwaysCondition(),
        action=action or (lambda ctx: None),
        priority=priority,
    )


# ============== RuleEngine Tests ==============

class TestConditions:
    def test_expression_equality_on_dict(self):
        ctx = RuleContext(entity={"zone": {"kind": "lodging"}}, entity_type="x", action="entered")
        assert ExpressionCondition("zone.kind == 'lodging'").evaluate(ctx)
        assert not ExpressionCondition("zone.kind == 'dining'").evaluate(ctx)
        assert ExpressionCondition("zone.kind != 'dining'").evaluate(ctx)

    def test_unsupported_expression(self):
        ctx = RuleContext(entity={}, entity_type="x", action="entered")
        assert not ExpressionCondition("kind > 3").evaluate(ctx)


class TestRuleEngine:
    def test_register_duplicate(self):
        engine = RuleEngine()
        engine.register_rule(make_rule("r1"))
        with pytest.raises(ValueError):
            engine.register_rule(make_rule("r1"))

    def test_evaluate_in_priority_order(self):
        engine = RuleEngine()
        fired = []
        engine.register_rule(make_rule("low", action=lambda c: fired.append("low"), priority=1))
        engine.register_rule(make_rule("high", action=lambda c: fired.append("high"), priority=9))
        engine.register_rule(make_rule("other", scope="dining:entered", action=lambda c: fired.append("other")))

        triggered = engine.evaluate(RuleContext(entity={}, entity_type="lodging:entered", action="entered"))

        assert fired == ["high", "low"]
        assert [r.rule_id for r in triggered] == ["high", "low"]

    def test_failing_action_isolated(self):
        engine = RuleEngine()
        fired = []

        def broken(ctx):
            raise RuntimeError("nope")

        engine.register_rule(make_rule("broken", action=broken, priority=5))
        engine.register_rule(make_rule("ok", action=lambda c: fired.append("ok")))

        triggered = engine.evaluate(RuleContext(entity={}, entity_type="lodging:entered", action="entered"))

        assert fired == ["ok"]
        assert [r.rule_id for r in triggered] == ["ok"]

    def test_matching_rules_does_not_run_actions(self):
        engine = RuleEngine()
        fired = []
        engine.register_rule(make_rule("r", action=lambda c: fired.append(1)))

        matched = engine.matching_rules(RuleContext(entity={}, entity_type="lodging:entered", action="entered"))

        assert [r.rule_id for r in matched] == ["r"]
        assert fired == []

    def test_disabled_and_unmatched_rules_skipped(self):
        engine = RuleEngine()
        engine.register_rule(make_rule("hotel", condition=ExpressionCondition("zone_id == 'hotel-main'")))
        disabled = make_rule("off")
        disabled.enabled = False
        engine.register_rule(disabled)

        at_hotel = RuleContext(entity={"zone_id": "hotel-main"}, entity_type="lodging:entered", action="entered")
        elsewhere = RuleContext(entity={"zone_id": "villa"}, entity_type="lodging:entered", action="entered")

        assert [r.rule_id for r in engine.matching_rules(at_hotel)] == ["hotel"]
        assert engine.matching_rules(elsewhere) == []
        assert len(engine.list_rules()) == 2


# ============== StateMachine Tests ==============

@pytest.fixture
def machine_config():
    return StateMachineConfig(
        name="Door",
        states=["closed", "open", "locked"],
        transitions=[
            StateTransition("closed", "open", "open"),
            StateTransition("open", "closed", "close"),
            StateTransition("closed", "locked", "lock"),
        ],
        initial_state="closed",
        terminal_states=["locked"],
    )


class TestStateMachine:
    def test_initial_state(self, machine_config):
        machine = StateMachine(machine_config)
        assert machine.current_state == "closed"
        assert not machine.is_terminal

    def test_transition_success(self, machine_config):
        machine = StateMachine(machine_config)
        assert machine.transition_to("open", "open")
        assert machine.current_state == "open"
        assert machine.transition_to("closed", "close")
        assert machine.current_state == "closed"

    def test_invalid_transition_rejected(self, machine_config):
        machine = StateMachine(machine_config)
        assert not machine.transition_to("closed", "close")
        assert not machine.transition_to("nowhere", "open")
        assert machine.current_state == "closed"

    def test_trigger_must_lead_to_target(self, machine_config):
        machine = StateMachine(machine_config)
        assert not machine.can_transition_to("open", "lock")
        assert machine.transition_to("locked", "lock")
        assert machine.is_terminal
        assert not machine.transition_to("open", "open")

    def test_start_state_override(self, machine_config):
        machine = StateMachine(machine_config, state="open")
        assert machine.transition_to("closed", "close")

# ============== Saga Tests ==============

class TestSaga:
    def test_all_steps_succeed(self):
        log = []
        saga = (
            Saga("ok")
            .add_step("a", lambda: log.append("a") or 1, lambda r: log.append("undo a"))
            .add_step("b", lambda: log.append("b") or 2, lambda r: log.append("undo b"))
        )

        result = saga.execute()

        assert result.succeeded
        assert result.completed_steps == ["a", "b"]
        assert result.results == {"a": 1, "b": 2}
        assert not result.rolled_back
        assert log == ["a", "b"]

    def test_failure_compensates_in_reverse(self):
        log = []

        def fail():
            raise RuntimeError("step c failed")

        saga = (
            Saga("rollback")
            .add_step("a", lambda: "ra", lambda r: log.append(f"undo a:{r}"))
            .add_step("b", lambda: "rb", lambda r: log.append(f"undo b:{r}"))
            .add_step("c", fail, lambda r: log.append("undo c"))
        )

        result = saga.execute()

        assert not result.succeeded
        assert result.failed_step == "c"
        assert isinstance(result.error, RuntimeError)
        assert result.compensated_steps == ["b", "a"]
        assert log == ["undo b:rb", "undo a:ra"]
        assert result.rolled_back

    def test_compensation_failure_collected(self):
        log = []

        def broken_undo(r):
            raise RuntimeError("cannot undo")

        saga = (
            Saga("partial")
            .add_step("a", lambda: None, lambda r: log.append("undo a"))
            .add_step("b", lambda: None, broken_undo)
            .add_step("c", lambda: 1 / 0)
        )

        result = saga.execute()

        assert log == ["undo a"]
        assert [name for name, _ in result.compensation_errors] == ["b"]

    def test_execute_once(self):
        saga = Saga("once").add_step("a", lambda: None)
        saga.execute()
        with pytest.raises(RuntimeError):
            saga.execute()
        with pytest.raises(RuntimeError):
            saga.add_step("b", lambda: None)
