from datetime import datetime, timedelta, timezone

import pytest

from opsflow.contracts import ConditionStep, DelayStep, Rule
from opsflow.errors import NoMatchingBranch, UnrecoverableStepFailure
from opsflow.steps import (
    ActionRegistry,
    StepContext,
    evaluate_rule,
    evaluate_rules,
    has_path,
    render_template,
    resolve_path,
    runner_for,
)

NOW = datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)


def _ctx(bindings, actions=None, notifier=None) -> StepContext:
    return StepContext(
        execution_id="exec-1",
        tenant_id="t1",
        bindings=bindings,
        now=NOW,
        actions=actions or ActionRegistry(),
        notifier=notifier,
    )


def test_render_template_keeps_types_for_whole_placeholders():
    bindings = {"contact": {"email": "a@b.com", "score": 42}, "tags": ["vip"]}
    assert render_template("{{contact.score}}", bindings) == 42
    assert render_template("{{ tags }}", bindings) == ["vip"]
    assert render_template("Hi {{contact.email}} ({{contact.score}})", bindings) == (
        "Hi a@b.com (42)"
    )
    assert render_template("{{missing}}", bindings) is None
    assert render_template("x{{missing}}y", bindings) == "xy"
    assert render_template({"to": ["{{contact.email}}"]}, bindings) == {
        "to": ["a@b.com"]
    }
    assert render_template(7, bindings) == 7


def test_resolve_path_handles_lists():
    data = {"items": [{"id": "a"}, {"id": "b"}]}
    assert resolve_path(data, "items.1.id") == "b"
    assert not has_path(data, "items.5.id")
    assert not has_path(data, "items.x")


@pytest.mark.parametrize(
    "rule, expected",
    [
        (Rule(field="status", operator="equals", value="active"), True),
        (Rule(field="score", operator="equals", value="42"), True),
        (Rule(field="status", operator="not_equals", value="lost"), True),
        (Rule(field="email", operator="contains", value="@b.com"), True),
        (Rule(field="tags", operator="contains", value="vip"), True),
        (Rule(field="score", operator="greater_than", value=40), True),
        (Rule(field="score", operator="less_than", value="40"), False),
        (Rule(field="status", operator="greater_than", value=1), False),
        (Rule(field="email", operator="exists"), True),
        (Rule(field="phone", operator="exists"), False),
        (Rule(field="blank", operator="exists"), False),
        (Rule(field="phone", operator="not_exists"), True),
        (Rule(field="phone", operator="equals", value=None), False),
    ],
)
def test_evaluate_rule(rule, expected):
    bindings = {
        "status": "active",
        "score": 42,
        "email": "a@b.com",
        "tags": ["vip", "new"],
        "blank": "",
    }
    assert evaluate_rule(rule, bindings) is expected


def test_empty_rule_sets():
    assert evaluate_rules([], "and", {}) is True
    assert evaluate_rules([], "or", {}) is False


def test_or_logic():
    rules = [
        Rule(field="a", operator="equals", value=1),
        Rule(field="b", operator="equals", value=2),
    ]
    assert evaluate_rules(rules, "or", {"a": 0, "b": 2})
    assert not evaluate_rules(rules, "and", {"a": 0, "b": 2})


def test_action_registry_unknown_action():
    actions = ActionRegistry()

    @actions.register()
    def tag_contact(params, ctx):
        return {"tagged": True}

    assert actions.names() == ["tag_contact"]
    with pytest.raises(UnrecoverableStepFailure):
        actions.get("missing")


@pytest.mark.asyncio
async def test_condition_falls_back_to_default_edge():
    step = ConditionStep(
        id="check",
        config={"rules": [{"field": "score", "operator": "greater_than", "value": 50}]},
        next={"true": "hot", "default": "cold"},
    )
    outcome = await runner_for(step).apply(step, _ctx({"score": 10}))
    assert outcome.edge == "default"
    assert outcome.bindings == {"check_result": False}


@pytest.mark.asyncio
async def test_condition_without_matching_edge_raises():
    step = ConditionStep(
        id="check",
        config={"rules": [{"field": "score", "operator": "greater_than", "value": 50}]},
        next={"true": "hot"},
    )
    with pytest.raises(NoMatchingBranch):
        await runner_for(step).apply(step, _ctx({"score": 10}))


@pytest.mark.asyncio
async def test_delay_computes_resume_time():
    step = DelayStep(id="wait", config={"duration": 90, "unit": "minutes"})
    outcome = await runner_for(step).apply(step, _ctx({}))
    assert outcome.wait_until == NOW + timedelta(minutes=90)
