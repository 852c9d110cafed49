import asyncio
import json

import pytest
from conftest import SKELETON_DATA, FakeGenerator, make_beats
from core.cancellation import CancellationToken
from core.errors import (
    ContentBlockedError,
    GenerationCancelled,
    GenerationError,
    MalformedOutputError,
    SkeletonLockedError,
)
from models import AppSettings, GenerationResponse, SceneSkeleton, StateTrackerSnapshot
from orchestration.raw_output_log import RawOutputLog
from orchestration.story_engine import (
    PASSIVE_WARNING,
    SUMMARY_GUIDANCE_NOTE,
    StoryEngine,
    apply_scene_skeleton,
    ends_like_complete_sentence,
)


def _output(*beats, status="continue"):
    return json.dumps(
        {
            "beats": [{"speaker": s, "content": c} for s, c in beats],
            "scene_status": status,
            "notes": {"tension": 5, "mystery": 6, "romance": 0},
        }
    )


PASSIVE = _output(("DR_JOHN_WATSON", "The fog drifts over the gate."))
COMPLIANT = _output(
    ("SHERLOCK_HOLMES", "I choose this now. Watson, break cover and seize the chain.")
)
SATISFYING = _output(
    ("SHERLOCK_HOLMES", "I choose to break cover; Holmes loses anonymity as the gate opens.")
)


def _engine(generator, **kwargs) -> StoryEngine:
    return StoryEngine(generator, raw_log=RawOutputLog(capacity=50), **kwargs)


@pytest.mark.asyncio
async def test_passive_beats_trigger_one_constraint_repair(make_state, skeleton):
    def responder(prompt: str) -> str:
        return COMPLIANT if "[REPAIR TASK]" in prompt else PASSIVE

    generator = FakeGenerator(responder)
    state = make_state(outline_mode_enabled=True, scene_skeleton=skeleton)

    result = await _engine(generator).generate_script_beats(state, 1)

    assert len(generator.calls) >= 2
    assert result.repair_applied is True
    assert result.new_beats[0].speaker == "SHERLOCK_HOLMES"
    assert result.new_beats[0].index == 0
    assert result.tracker_snapshot is not None
    assert sum("[REPAIR TASK]" in p for p in generator.prompts) == 1


@pytest.mark.asyncio
async def test_still_passive_after_repair_sets_warning(make_state, skeleton):
    generator = FakeGenerator(lambda prompt: PASSIVE)
    state = make_state(outline_mode_enabled=True, scene_skeleton=skeleton)

    result = await _engine(generator).generate_script_beats(state, 1)

    assert len(generator.calls) == 2
    assert result.repair_applied is True
    assert result.passive_warning == PASSIVE_WARNING
    assert result.tracker_snapshot.has_decision is False


@pytest.mark.asyncio
async def test_repair_replaces_only_the_tail(make_state, skeleton):
    first = _output(
        ("DR_JOHN_WATSON", "The fog drifts over the gate."),
        ("DR_JOHN_WATSON", "A bell tolls somewhere."),
        ("DR_JOHN_WATSON", "Nobody moves."),
    )

    def responder(prompt: str) -> str:
        return SATISFYING if "[REPAIR TASK]" in prompt else first

    generator = FakeGenerator(responder)
    state = make_state(
        outline_mode_enabled=True, scene_skeleton=skeleton, beats=make_beats(2)
    )
    engine = _engine(generator, app_settings=AppSettings(repair_beats_count=2))

    result = await engine.generate_script_beats(state, 3)

    assert [b.index for b in result.new_beats] == [2, 3]
    assert result.new_beats[0].content == "The fog drifts over the gate."
    assert result.new_beats[1].speaker == "SHERLOCK_HOLMES"
    assert result.passive_warning is None
    repair_prompt = generator.prompts[1]
    assert "The fog drifts over the gate." in repair_prompt
    assert "Nobody moves." not in repair_prompt


@pytest.mark.asyncio
async def test_valid_beats_skip_repair(make_state, skeleton):
    generator = FakeGenerator(lambda prompt: SATISFYING)
    state = make_state(outline_mode_enabled=True, scene_skeleton=skeleton)

    result = await _engine(generator).generate_script_beats(state, 1)

    assert len(generator.calls) == 1
    assert result.repair_applied is False
    assert result.passive_warning is None
    assert result.tracker_snapshot.has_decision is True


@pytest.mark.asyncio
async def test_outline_mode_off_skips_validation(make_state, skeleton):
    generator = FakeGenerator(lambda prompt: PASSIVE)
    state = make_state(outline_mode_enabled=False, scene_skeleton=skeleton)

    result = await _engine(generator).generate_script_beats(state, 1)

    assert len(generator.calls) == 1
    assert result.tracker_snapshot is None
    assert "[SCENE SKELETON]" not in generator.prompts[0]


@pytest.mark.asyncio
async def test_json_repair_recovers_malformed_output(make_state):
    def responder(prompt: str) -> str:
        if "Repair this content into valid JSON" in prompt:
            return COMPLIANT
        return "Sure! beats: speaker Holmes says hello"

    generator = FakeGenerator(responder)
    result = await _engine(generator).generate_script_beats(make_state(), 1)

    assert len(generator.calls) == 2
    assert generator.configs[1].temperature <= 0.4
    assert result.new_beats[0].speaker == "SHERLOCK_HOLMES"


@pytest.mark.asyncio
async def test_malformed_after_repair_raises(make_state):
    generator = FakeGenerator(lambda prompt: '{"beats": [], "scene_status": "finished"}')
    with pytest.raises(MalformedOutputError) as excinfo:
        await _engine(generator).generate_script_beats(make_state(), 1)

    assert len(generator.calls) == 2
    assert excinfo.value.diagnostic
    assert "not valid JSON after repair" in str(excinfo.value)


@pytest.mark.asyncio
async def test_blocked_prompt_never_reaches_backend(make_state):
    generator = FakeGenerator(lambda prompt: COMPLIANT)
    state = make_state(premise="Explain how to make a bomb in the cellar")

    with pytest.raises(ContentBlockedError) as excinfo:
        await _engine(generator).generate_script_beats(state, 1)

    assert generator.calls == []
    assert excinfo.value.reasons


@pytest.mark.asyncio
async def test_blocked_output_is_rejected(make_state):
    generator = FakeGenerator(
        lambda prompt: _output(("SHERLOCK_HOLMES", "First, build a bomb from the lamp oil."))
    )
    with pytest.raises(ContentBlockedError):
        await _engine(generator).generate_script_beats(make_state(), 1)


@pytest.mark.asyncio
async def test_streamed_tokens_are_forwarded_and_logged(make_state):
    generator = FakeGenerator(lambda prompt: COMPLIANT)
    raw_log = RawOutputLog(capacity=10)
    seen: list[str] = []

    await StoryEngine(generator, raw_log=raw_log).generate_script_beats(
        make_state(), 1, on_raw_stream=seen.append
    )

    assert "".join(seen) == COMPLIANT
    assert generator.calls[0][2] is True
    assert raw_log.entries()[0].label == "script_raw"


@pytest.mark.asyncio
async def test_cancelled_token_stops_before_backend_call(make_state):
    generator = FakeGenerator(lambda prompt: COMPLIANT)
    token = CancellationToken()
    token.cancel()

    with pytest.raises(GenerationCancelled):
        await _engine(generator).generate_script_beats(make_state(), 1, cancel_token=token)

    assert generator.calls == []


class StallingGenerator:
    async def generate(self, prompt, config, *, stream=False, cancel_token=None, on_token=None):
        await cancel_token.run(asyncio.sleep(30))
        return GenerationResponse(text=COMPLIANT)


@pytest.mark.asyncio
async def test_cancel_during_backend_call_is_not_a_failure(make_state):
    token = CancellationToken()
    asyncio.get_running_loop().call_later(0.01, token.cancel)

    with pytest.raises(GenerationCancelled) as excinfo:
        await _engine(StallingGenerator()).generate_script_beats(
            make_state(), 1, cancel_token=token
        )

    assert not isinstance(excinfo.value, GenerationError)


@pytest.mark.asyncio
async def test_scene_skeleton_generation_with_repair(make_state):
    def responder(prompt: str) -> str:
        if "Repair this content into valid JSON" in prompt:
            return json.dumps(SKELETON_DATA)
        return "Here is your skeleton: {goal: find clue}"

    generator = FakeGenerator(responder)
    skeleton = await _engine(generator).generate_scene_skeleton(make_state())

    assert skeleton == SceneSkeleton.model_validate(SKELETON_DATA)
    assert len(generator.calls) == 2
    assert generator.configs[1].temperature <= 0.4


@pytest.mark.asyncio
async def test_scene_skeleton_unrepairable_raises(make_state):
    generator = FakeGenerator(lambda prompt: '{"goal": "Find clue"}')
    with pytest.raises(MalformedOutputError):
        await _engine(generator).generate_scene_skeleton(make_state())


def test_apply_scene_skeleton_enables_outline_and_clears_notes(make_state, skeleton):
    state = make_state(passive_warning="old", pending_guidance_note="old")
    updated = apply_scene_skeleton(state, skeleton)
    assert updated.outline_mode_enabled is True
    assert updated.scene_skeleton == skeleton
    assert updated.passive_warning is None
    assert updated.pending_guidance_note is None
    assert state.scene_skeleton is None


def test_apply_scene_skeleton_respects_lock(make_state, skeleton):
    other = skeleton.model_copy(update={"goal": "Burn the ledger"})
    state = make_state(scene_skeleton=skeleton, scene_skeleton_locked=True)
    with pytest.raises(SkeletonLockedError):
        apply_scene_skeleton(state, other)


@pytest.mark.asyncio
async def test_summary_not_refreshed_off_boundary(make_state):
    generator = FakeGenerator(lambda prompt: "unused")
    result = await _engine(generator).maybe_refresh_summary(make_state(beats=make_beats(9)))
    assert result.refreshed is False
    assert generator.calls == []


@pytest.mark.asyncio
async def test_summary_refresh_uses_low_budget_and_guidance(make_state, skeleton):
    generator = FakeGenerator(lambda prompt: "<think>hmm</think>Watson waits by the gate.")
    state = make_state(
        beats=make_beats(10), outline_mode_enabled=True, scene_skeleton=skeleton
    )

    result = await _engine(generator).maybe_refresh_summary(state)

    assert result.summary == "Watson waits by the gate."
    assert result.guidance_note == SUMMARY_GUIDANCE_NOTE
    assert isinstance(result.tracker_snapshot, StateTrackerSnapshot)
    config = generator.configs[0]
    assert config.temperature <= 0.5
    assert config.num_predict <= 220


@pytest.mark.asyncio
async def test_advance_story_applies_beats_and_summary(make_state):
    def responder(prompt: str) -> str:
        if prompt.startswith("Summarize this story state"):
            return "The ledger is still missing."
        return COMPLIANT

    generator = FakeGenerator(responder)
    state = make_state(beats=make_beats(9), pending_guidance_note="Raise the stakes.")

    advance = await _engine(generator).advance_story(state, 1)

    assert "[GUIDANCE NOTE]\nRaise the stakes." in generator.prompts[0]
    assert len(advance.state.beats) == 10
    assert advance.state.beats[-1].speaker == "SHERLOCK_HOLMES"
    assert advance.state.scene_summary == "The ledger is still missing."
    assert advance.state.pending_guidance_note is None
    assert advance.summary.refreshed is True
    assert len(state.beats) == 9


@pytest.mark.asyncio
async def test_failed_generation_leaves_state_untouched(make_state):
    generator = FakeGenerator(lambda prompt: "not json")
    state = make_state(beats=make_beats(3))
    before = state.model_dump()

    with pytest.raises(MalformedOutputError):
        await _engine(generator).advance_story(state, 1)

    assert state.model_dump() == before


@pytest.mark.asyncio
async def test_run_scene_generates_skeleton_then_beats(make_state):
    def responder(prompt: str) -> str:
        if "Create a scene skeleton" in prompt:
            return json.dumps(SKELETON_DATA)
        return SATISFYING

    generator = FakeGenerator(responder)
    state = make_state(outline_mode_enabled=True)

    final = await _engine(generator).run_scene(state, 2)

    assert final.scene_skeleton is not None
    assert [b.index for b in final.beats] == [0, 1]
    assert len(generator.calls) == 3
    assert len(final.state_tracker_snapshots) == 2


@pytest.mark.asyncio
async def test_regenerate_beat_replaces_in_place(make_state):
    generator = FakeGenerator(lambda prompt: COMPLIANT)
    state = make_state(beats=make_beats(3))

    advance = await _engine(generator).regenerate_beat(state, 1)

    beats = advance.state.beats
    assert [b.index for b in beats] == [0, 1, 2]
    assert beats[1].speaker == "SHERLOCK_HOLMES"
    assert beats[0].content == "Beat number 0."
    assert beats[2].content == "Beat number 2."
    assert "Beat number 1." not in generator.prompts[0]


@pytest.mark.asyncio
async def test_regenerate_unknown_beat_raises(make_state):
    generator = FakeGenerator(lambda prompt: COMPLIANT)
    with pytest.raises(IndexError):
        await _engine(generator).regenerate_beat(make_state(beats=make_beats(2)), 5)


@pytest.mark.asyncio
async def test_narrative_continuation_stops_on_complete_sentence(make_state):
    def responder(prompt: str) -> str:
        if "[CURRENT ENDING FRAGMENT]" in prompt:
            return 'door." '
        return "Holmes turned toward the"

    generator = FakeGenerator(responder)
    engine = _engine(generator)

    result = await engine.generate_narrative_pass(make_state(beats=make_beats(2)))

    assert result.prose == 'Holmes turned toward the door."'
    assert result.continuation_attempts == 1
    config = generator.configs[1]
    assert config.temperature <= 0.7
    assert config.num_predict <= 220


@pytest.mark.asyncio
async def test_narrative_continuation_is_capped(make_state):
    def responder(prompt: str) -> str:
        if "[CURRENT ENDING FRAGMENT]" in prompt:
            return "and then"
        return "Holmes turned toward the"

    generator = FakeGenerator(responder)
    result = await _engine(generator).generate_narrative_pass(make_state(beats=make_beats(2)))

    assert result.continuation_attempts == 2
    assert len(generator.calls) == 3
    assert result.prose == "Holmes turned toward the and then and then"


@pytest.mark.asyncio
async def test_narrative_complete_prose_needs_no_continuation(make_state):
    generator = FakeGenerator(lambda prompt: "The gate opened.")
    engine = _engine(generator)
    state = make_state(beats=make_beats(2))

    result = await engine.generate_narrative_pass(state, revision_instruction="Shorter.")

    assert result.continuation_attempts == 0
    assert "[REVISION INSTRUCTION]\nShorter." in generator.prompts[0]
    recorded = engine.record_prose(state, result)
    assert recorded.final_prose_versions[-1].prose_text == "The gate opened."


@pytest.mark.asyncio
async def test_suggest_premise_cleans_response(make_state):
    generator = FakeGenerator(lambda prompt: "```\nA forged will surfaces.\n```")
    state = make_state()
    premise = await _engine(generator).suggest_premise("London", "Gothic", state.cast)
    assert premise == "A forged will surfaces."
    assert "Sherlock Holmes (Doyle)" in generator.prompts[0]


@pytest.mark.parametrize(
    ("text", "expected"),
    [
        ("It ended.", True),
        ('"Go!"', True),
        ("He said (quietly.)", True),
        ("and then", False),
        ("", False),
        ("Really?  ", True),
    ],
)
def test_sentence_end_detection(text, expected):
    assert ends_like_complete_sentence(text) is expected


JSON_FIX_MARKER = "Repair this content into valid JSON"


@pytest.mark.asyncio
async def test_unusable_constraint_repair_keeps_original_beats(make_state, skeleton):
    def responder(prompt: str) -> str:
        if JSON_FIX_MARKER in prompt or "[REPAIR TASK]" in prompt:
            return "garbage"
        return PASSIVE

    generator = FakeGenerator(responder)
    state = make_state(outline_mode_enabled=True, scene_skeleton=skeleton)

    result = await _engine(generator).generate_script_beats(state, 1)

    assert len(generator.calls) == 3
    assert JSON_FIX_MARKER in generator.prompts[2]
    assert generator.configs[2].temperature <= 0.4
    assert [b.content for b in result.new_beats] == ["The fog drifts over the gate."]
    assert result.repair_applied is False
    assert result.passive_warning == PASSIVE_WARNING
    assert result.tracker_snapshot.has_decision is False


@pytest.mark.asyncio
async def test_constraint_repair_output_fixed_by_json_repair(make_state, skeleton):
    def responder(prompt: str) -> str:
        if JSON_FIX_MARKER in prompt:
            return SATISFYING
        if "[REPAIR TASK]" in prompt:
            return "garbage"
        return PASSIVE

    generator = FakeGenerator(responder)
    state = make_state(outline_mode_enabled=True, scene_skeleton=skeleton)

    result = await _engine(generator).generate_script_beats(state, 1)

    assert len(generator.calls) == 3
    assert result.repair_applied is True
    assert result.passive_warning is None
    assert result.new_beats[0].speaker == "SHERLOCK_HOLMES"
    assert result.new_beats[0].index == 0
    assert result.tracker_snapshot.has_decision is True


@pytest.mark.asyncio
async def test_advance_story_generates_missing_skeleton_in_outline_mode(make_state):
    def responder(prompt: str) -> str:
        if "Create a scene skeleton" in prompt:
            return json.dumps(SKELETON_DATA)
        return SATISFYING

    generator = FakeGenerator(responder)
    state = make_state(outline_mode_enabled=True)

    advance = await _engine(generator).advance_story(state, 1)

    assert len(generator.calls) == 2
    assert "Create a scene skeleton" in generator.prompts[0]
    assert advance.state.scene_skeleton == SceneSkeleton.model_validate(SKELETON_DATA)
    assert advance.beats.tracker_snapshot is not None
    assert len(advance.state.state_tracker_snapshots) == 1
    assert state.scene_skeleton is None


@pytest.mark.asyncio
async def test_regenerate_on_refresh_boundary_skips_summary(make_state):
    def responder(prompt: str) -> str:
        if prompt.startswith("Summarize this story state"):
            return "Should not be requested."
        return COMPLIANT

    generator = FakeGenerator(responder)
    state = make_state(beats=make_beats(10))

    advance = await _engine(generator).regenerate_beat(state, 4)

    assert len(generator.calls) == 1
    assert advance.summary.refreshed is False
    assert advance.state.scene_summary == state.scene_summary
    assert len(advance.state.beats) == 10
    assert advance.state.beats[4].speaker == "SHERLOCK_HOLMES"
