import json

import pytest
from conftest import make_beats
from models import AppSettings, ModelConfig
from storage.project_store import ProjectStore, normalize_settings


@pytest.fixture
def store(tmp_path) -> ProjectStore:
    return ProjectStore(base_dir=str(tmp_path))


@pytest.mark.asyncio
async def test_save_load_round_trip(store, make_state, skeleton):
    state = make_state(beats=make_beats(2), scene_skeleton=skeleton)
    await store.save_project(state)
    assert await store.load_project("p1") == state


@pytest.mark.asyncio
async def test_list_and_delete(store, make_state):
    await store.save_project(make_state(id="a", title="First"))
    await store.save_project(make_state(id="b", title="Second"))

    assert {p.id for p in await store.list_projects()} == {"a", "b"}
    assert await store.delete_project("a") is True
    assert await store.delete_project("a") is False
    assert [p.id for p in await store.list_projects()] == ["b"]


@pytest.mark.asyncio
async def test_missing_or_corrupt_project_loads_as_none(store):
    assert await store.load_project("nope") is None
    with open(store.project_path("bad"), "w", encoding="utf-8") as f:
        f.write("{oops")
    assert await store.load_project("bad") is None


@pytest.mark.asyncio
async def test_legacy_project_file_is_normalized(store, holmes_card, watson_card):
    legacy = {
        "id": "old_1",
        "title": "Legacy",
        "created_at": "2024-01-01T00:00:00+00:00",
        "updated_at": "2024-01-01T00:00:00+00:00",
        "selected_characters": [holmes_card, watson_card],
        "setting": "London",
        "premise": "Recover ledger",
        "tone": "Victorian",
        "length_target": "short",
        "script_beats": [],
        "final_prose_versions": [],
        "scene_summary": "",
    }
    with open(store.project_path("old_1"), "w", encoding="utf-8") as f:
        json.dump(legacy, f)

    state = await store.load_project("old_1")
    assert state.outline_mode_enabled is False
    assert state.state_tracker_snapshots == []


@pytest.mark.asyncio
async def test_export_text(store, tmp_path):
    target = tmp_path / "exports" / "scene.txt"
    await store.export_text(str(target), "The gate opened.")
    assert target.read_text(encoding="utf-8") == "The gate opened."


@pytest.mark.asyncio
async def test_settings_default_save_and_load(store):
    assert await store.load_settings() == AppSettings()

    custom = AppSettings(style_pacing=80, generation=ModelConfig(model="mistral"))
    await store.save_settings(custom)
    assert await store.load_settings() == custom


def test_partial_settings_merge_over_defaults():
    merged = normalize_settings({"style_pacing": 70, "generation": {"temperature": 0.3}})
    assert merged.style_pacing == 70
    assert merged.generation.temperature == 0.3
    assert merged.generation.model == AppSettings().generation.model
    assert merged.repair_beats_count == AppSettings().repair_beats_count


def test_invalid_settings_fall_back_to_defaults():
    assert normalize_settings({"repair_beats_count": 99}) == AppSettings()
    assert normalize_settings("garbage") == AppSettings()


def test_project_ids_are_sanitized(store):
    assert store.project_path("../evil").endswith("___evil.json")
