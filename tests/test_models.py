from __future__ import annotations

import pytest

from src.automation_engine.errors import ConfigurationError, QueueError
from src.automation_engine.models import (
    ActionType,
    AutomationDefinition,
    ContinuationState,
    InboundEvent,
    TriggerType,
)


def build_record(actions: list[dict], **overrides) -> dict:
    record = {
        "id": 3,
        "owner_id": 1,
        "name": "boas-vindas",
        "trigger_type": "keyword",
        "trigger_config": {"keywords": ["oi"]},
        "actions": actions,
    }
    record.update(overrides)
    return record


def test_from_record_indexes_actions_by_id() -> None:
    definition = AutomationDefinition.from_record(
        build_record(
            [
                {
                    "id": "1",
                    "type": "send_message",
                    "config": {"message": {"content": "oi"}},
                    "next_action_id": "2",
                },
                {"id": "2", "type": "add_tag", "config": {"tag": "novo_contato"}},
            ]
        )
    )

    assert definition.trigger_type is TriggerType.KEYWORD
    assert definition.entry_action_id == "1"
    assert definition.action("2").type is ActionType.ADD_TAG
    assert definition.action("1").next_action_id == "2"


def test_empty_action_list_is_valid() -> None:
    definition = AutomationDefinition.from_record(build_record([]))
    assert definition.entry_action_id is None


@pytest.mark.parametrize(
    "actions, message",
    [
        ([{"id": "1", "type": "teleport"}], "unknown action type"),
        (
            [{"id": "1", "type": "add_tag", "config": {"tag": "a"}, "next_action_id": "9"}],
            "does not exist",
        ),
        (
            [
                {"id": "1", "type": "add_tag", "config": {"tag": "a"}},
                {"id": "1", "type": "add_tag", "config": {"tag": "b"}},
            ],
            "duplicate action id",
        ),
        (
            [{"id": "1", "type": "delay", "config": {"delay": {"duration": 5, "unit": "weeks"}}}],
            "unsupported unit",
        ),
        ([{"id": "1", "type": "add_tag", "config": {}}], "tag is required"),
        (
            [
                {
                    "id": "1",
                    "type": "condition",
                    "config": {
                        "condition": {
                            "field": "age",
                            "operator": "equals",
                            "value": 1,
                            "true_actions": ["7"],
                        }
                    },
                }
            ],
            "branch action",
        ),
    ],
)
def test_invalid_definitions_raise_configuration_error(actions, message) -> None:
    with pytest.raises(ConfigurationError) as excinfo:
        AutomationDefinition.from_record(build_record(actions))
    assert message in str(excinfo.value)
    assert excinfo.value.automation_id == 3


def test_condition_cannot_continue_after_branches() -> None:
    actions = [
        {
            "id": "1",
            "type": "condition",
            "config": {"condition": {"field": "age", "operator": "equals", "value": 1}},
            "next_action_id": "2",
        },
        {"id": "2", "type": "add_tag", "config": {"tag": "a"}},
    ]
    with pytest.raises(ConfigurationError, match="terminal"):
        AutomationDefinition.from_record(build_record(actions))


def test_cycle_is_rejected() -> None:
    actions = [
        {"id": "1", "type": "add_tag", "config": {"tag": "a"}, "next_action_id": "2"},
        {"id": "2", "type": "remove_tag", "config": {"tag": "a"}, "next_action_id": "1"},
    ]
    with pytest.raises(ConfigurationError, match="loops back"):
        AutomationDefinition.from_record(build_record(actions))


def test_unknown_trigger_type_is_rejected() -> None:
    with pytest.raises(ConfigurationError, match="unknown trigger type"):
        AutomationDefinition.from_record(build_record([], trigger_type="sms_received"))


def test_inbound_event_parses_button_prefix() -> None:
    event = InboundEvent.from_message("BUTTON_PAYLOAD: comprar", channel="whatsapp")
    assert event.button_payload == "comprar"

    plain = InboundEvent.from_message("oi")
    assert plain.button_payload is None


def test_continuation_state_rejects_malformed_payload() -> None:
    with pytest.raises(QueueError):
        ContinuationState.from_payload({"automation_id": 1, "action_id": "3"})


def test_continuation_state_carries_trigger_event() -> None:
    event = InboundEvent(text="oi", channel="telegram")
    state = ContinuationState(
        automation_id=1,
        contact_id=2,
        action_id="3",
        trigger_event=event.to_dict(),
        trace_id="abc",
    )

    restored = ContinuationState.from_payload(state.to_payload())

    assert restored == state
    assert InboundEvent.from_dict(restored.trigger_event).text == "oi"


@pytest.mark.parametrize(
    "overrides, message",
    [
        ({"actions": "1"}, "actions must be a list"),
        ({"actions": ["enviar"]}, "action must be an object"),
        ({"trigger_config": ["oi"]}, "trigger_config must be an object"),
        ({"trigger_config": {"keywords": "oi"}}, "keywords must be a list"),
        ({"trigger_config": {"conditions": {"tags": "vip"}}}, "conditions.tags"),
        ({"id": "tres"}, "id must be an integer"),
        ({"owner_id": None}, "owner_id must be an integer"),
    ],
)
def test_malformed_structure_raises_configuration_error(overrides, message) -> None:
    record = build_record([{"id": "1", "type": "add_tag", "config": {"tag": "a"}}])
    record.update(overrides)

    with pytest.raises(ConfigurationError, match=message):
        AutomationDefinition.from_record(record)


@pytest.mark.parametrize(
    "schedule, message",
    [
        ({"type": "weekly", "time": "09:00", "days_of_week": 1}, "days_of_week"),
        ({"type": "weekly", "time": "09:00", "days_of_week": [None]}, "days_of_week"),
        ({"type": "weekly", "time": "09:00", "days_of_week": [7]}, "days_of_week"),
        ({"type": "daily", "time": "9h"}, "HH:MM"),
        ({"type": "hourly", "time": "09:00"}, "unsupported schedule type"),
        ({"type": "monthly", "time": "09:00", "day_of_month": 40}, "day_of_month"),
        ({"type": "once", "datetime": "amanha"}, "ISO timestamp"),
        ("09:00", "schedule must be an object"),
    ],
)
def test_malformed_schedule_is_rejected(schedule, message) -> None:
    record = build_record(
        [{"id": "1", "type": "add_tag", "config": {"tag": "a"}}],
        trigger_type="schedule",
        trigger_config={"schedule": schedule},
    )

    with pytest.raises(ConfigurationError, match=message):
        AutomationDefinition.from_record(record)


def test_valid_schedules_are_accepted() -> None:
    for schedule in (
        {"type": "daily", "time": "09:00"},
        {"type": "weekly", "time": "09:00", "days_of_week": [0, 6]},
        {"type": "monthly", "time": "08:00", "day_of_month": 15},
        {"type": "once", "datetime": "2024-03-04T09:00:00"},
    ):
        record = build_record(
            [{"id": "1", "type": "add_tag", "config": {"tag": "a"}}],
            trigger_type="schedule",
            trigger_config={"schedule": schedule},
        )
        assert AutomationDefinition.from_record(record).trigger_type is TriggerType.SCHEDULE


def test_non_numeric_template_id_is_rejected_at_load() -> None:
    actions = [
        {"id": "1", "type": "send_message", "config": {"message": {"template_id": "boas-vindas"}}}
    ]

    with pytest.raises(ConfigurationError, match="template_id must be an integer"):
        AutomationDefinition.from_record(build_record(actions))


def test_condition_branches_must_be_lists() -> None:
    actions = [
        {
            "id": "1",
            "type": "condition",
            "config": {
                "condition": {
                    "field": "plano",
                    "operator": "equals",
                    "value": "ouro",
                    "false_actions": "2",
                }
            },
        },
        {"id": "2", "type": "add_tag", "config": {"tag": "a"}},
    ]

    with pytest.raises(ConfigurationError, match="false_actions must be a list"):
        AutomationDefinition.from_record(build_record(actions))


def test_unreachable_action_ids_follow_chain_and_branches() -> None:
    definition = AutomationDefinition.from_record(
        build_record(
            [
                {
                    "id": "1",
                    "type": "condition",
                    "config": {
                        "condition": {
                            "field": "plano",
                            "operator": "equals",
                            "value": "ouro",
                            "true_actions": ["2"],
                        }
                    },
                },
                {"id": "2", "type": "add_tag", "config": {"tag": "a"}, "next_action_id": "3"},
                {"id": "3", "type": "add_tag", "config": {"tag": "b"}},
                {"id": "4", "type": "add_tag", "config": {"tag": "c"}},
            ]
        )
    )

    assert definition.unreachable_action_ids() == ["4"]
