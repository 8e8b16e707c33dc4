from __future__ import annotations

import json
import logging
from pathlib import Path

import pytest

from src.automation_engine.errors import ConfigurationError
from src.automation_engine.registry import AutomationRegistry
from src.automation_engine.seed import import_automations_file, read_automations_file
from src.state_store import StateStore


EXAMPLE_FILE = Path(__file__).resolve().parent.parent / "data" / "automations.example.json"


def test_example_file_imports_and_validates(tmp_path: Path) -> None:
    store = StateStore(str(tmp_path / "state.db"))

    created = import_automations_file(EXAMPLE_FILE, store, default_owner_id=1)
    again = import_automations_file(EXAMPLE_FILE, store, default_owner_id=1)

    records = store.list_automations(1)
    assert created == len(records) == 3
    assert again == 0
    registry = AutomationRegistry()
    assert registry.load(records) == 3
    assert registry.quarantined == {}


def test_invalid_and_unnamed_entries_are_skipped(tmp_path: Path) -> None:
    seed_file = tmp_path / "automations.json"
    seed_file.write_text(
        json.dumps(
            {
                "automations": [
                    {"name": "", "trigger_type": "keyword", "actions": []},
                    {"name": "ruim", "trigger_type": "teleport", "actions": []},
                    {
                        "name": "boa",
                        "owner_id": 2,
                        "trigger_type": "flow_start",
                        "actions": [{"id": "1", "type": "add_tag", "config": {"tag": "x"}}],
                    },
                ]
            }
        ),
        encoding="utf-8",
    )
    store = StateStore(str(tmp_path / "state.db"))

    assert import_automations_file(seed_file, store) == 1
    assert store.list_automations(1) == []
    assert [r["name"] for r in store.list_automations(2)] == ["boa"]


def test_missing_file_is_not_fatal(tmp_path: Path) -> None:
    store = StateStore(str(tmp_path / "state.db"))
    assert import_automations_file(tmp_path / "nao_existe.json", store) == 0


def test_malformed_file_raises(tmp_path: Path) -> None:
    seed_file = tmp_path / "automations.json"
    seed_file.write_text("{nao e json", encoding="utf-8")

    with pytest.raises(ConfigurationError):
        read_automations_file(seed_file)


def test_structurally_broken_entries_do_not_stop_the_import(tmp_path: Path) -> None:
    seed_file = tmp_path / "automations.json"
    seed_file.write_text(
        json.dumps(
            [
                {"name": "acao texto", "trigger_type": "keyword", "actions": ["x"]},
                {"name": "gatilho lista", "trigger_type": "keyword", "trigger_config": ["oi"]},
                {"name": "dono texto", "owner_id": "abc", "trigger_type": "keyword"},
                {
                    "name": "ok",
                    "trigger_type": "keyword",
                    "trigger_config": {"keywords": ["oi"]},
                    "actions": [{"id": "1", "type": "add_tag", "config": {"tag": "x"}}],
                },
            ]
        ),
        encoding="utf-8",
    )
    store = StateStore(str(tmp_path / "state.db"))

    assert import_automations_file(seed_file, store) == 1
    assert [r["name"] for r in store.list_automations(1)] == ["ok"]


def test_unchained_actions_are_imported_with_warning(tmp_path: Path, caplog) -> None:
    seed_file = tmp_path / "automations.json"
    seed_file.write_text(
        json.dumps(
            [
                {
                    "name": "sem encadeamento",
                    "trigger_type": "keyword",
                    "trigger_config": {"keywords": ["oi"]},
                    "actions": [
                        {"id": "1", "type": "send_message", "config": {"message": {"content": "Oi"}}},
                        {"id": "2", "type": "add_tag", "config": {"tag": "novo"}},
                    ],
                }
            ]
        ),
        encoding="utf-8",
    )
    store = StateStore(str(tmp_path / "state.db"))

    with caplog.at_level(logging.WARNING, logger="src.automation_engine.seed"):
        assert import_automations_file(seed_file, store) == 1

    warnings = [r for r in caplog.records if getattr(r, "event", None) == "seed_unreachable_actions"]
    assert len(warnings) == 1
    assert "2" in warnings[0].getMessage()


def test_example_file_has_no_unreachable_actions(tmp_path: Path, caplog) -> None:
    store = StateStore(str(tmp_path / "state.db"))

    with caplog.at_level(logging.WARNING, logger="src.automation_engine.seed"):
        import_automations_file(EXAMPLE_FILE, store)

    assert not [r for r in caplog.records if getattr(r, "event", None) == "seed_unreachable_actions"]
