import os
import sys
from collections.abc import Callable

import pytest

# Ensure repository root is on PYTHONPATH for tests
repo_root = os.path.abspath(os.path.join(os.path.dirname(__file__), os.pardir))
if repo_root not in sys.path:
    sys.path.insert(0, repo_root)

from models import (  # noqa: E402
    Beat,
    GenerationResponse,
    SceneSkeleton,
    StoryState,
)


def character_card(char_id: str, name: str, persona: str, style: str) -> dict:
    return {
        "id": char_id,
        "name": name,
        "source_work": "Doyle",
        "public_domain_note": "PD",
        "persona_prompt": persona,
        "voice_constraints": ["A", "B", "C", "D", "E"],
        "motivations": ["Solve", "Protect", "Truth"],
        "conflicts": ["Detached", "Proud", "Risk"],
        "voice_style": style,
    }


@pytest.fixture
def holmes_card() -> dict:
    return character_card(
        "SHERLOCK_HOLMES", "Sherlock Holmes", "Analytic detective.", "Precise"
    )


@pytest.fixture
def watson_card() -> dict:
    return character_card(
        "DR_JOHN_WATSON", "Dr. John Watson", "Doctor and observer.", "Warm"
    )


SKELETON_DATA = {
    "goal": "Get the ledger",
    "opposition": "Steward with guards",
    "plan": "Bluff inspection",
    "turn": "Gate is sealed",
    "choice": "Holmes orders Watson to break cover",
    "cost": "Holmes loses anonymity",
    "outcome": "Gate opens but alarm sounds",
    "protagonist": "SHERLOCK_HOLMES",
    "constraints": {
        "must_include": ["spoken refusal"],
        "must_avoid": ["protagonist silent entire scene"],
    },
}


@pytest.fixture
def skeleton() -> SceneSkeleton:
    return SceneSkeleton.model_validate(SKELETON_DATA)


@pytest.fixture
def make_state(holmes_card, watson_card) -> Callable[..., StoryState]:
    def _make(**overrides) -> StoryState:
        data = {
            "id": "p1",
            "title": "Outline Test",
            "cast": [holmes_card, watson_card],
            "setting": "London",
            "premise": "Recover ledger",
            "tone": "Victorian",
            "length_target": "short",
        }
        data.update(overrides)
        return StoryState.model_validate(data)

    return _make


def make_beats(count: int, speaker: str = "DR_JOHN_WATSON") -> list[Beat]:
    return [
        Beat(index=i, speaker=speaker, content=f"Beat number {i}.")
        for i in range(count)
    ]


class FakeGenerator:
    """Backend stand-in answering each prompt through ``responder``."""

    def __init__(self, responder: Callable[[str], str]) -> None:
        self.responder = responder
        self.calls: list[tuple[str, object, bool]] = []

    @property
    def prompts(self) -> list[str]:
        return [prompt for prompt, _, _ in self.calls]

    @property
    def configs(self) -> list[object]:
        return [config for _, config, _ in self.calls]

    async def generate(
        self, prompt, config, *, stream=False, cancel_token=None, on_token=None
    ):
        self.calls.append((prompt, config, stream))
        if cancel_token is not None:
            cancel_token.raise_if_cancelled()
        text = self.responder(prompt)
        if stream and on_token is not None:
            on_token(text)
        return GenerationResponse(text=text)
