"""Shared fixtures for voice director tests."""

import asyncio
import json
import re

import pytest

from voice_director.errors import CompletionError
from voice_director.models import KIND_DIALOGUE, KIND_NARRATOR, NARRATOR, SceneContext, Segment

_INDEX = re.compile(r'"index": (\d+)')


def directions_json(entries):
    """Render ``[(index, tags), ...]`` as a completion response body."""
    return json.dumps({
        "directions": [
            {"index": i, "audioTags": tags, "stability": 0.4, "style": 0.6, "reasoning": "test"}
            for i, tags in entries
        ]
    })


def prompt_indices(request):
    return [int(i) for i in _INDEX.findall(request.user_prompt)]


class FakeClient:
    """In-process completion service.

    *responder* receives each ``CompletionRequest`` and returns the content
    string, or an exception instance to raise.
    """

    def __init__(self, responder):
        self.responder = responder
        self.requests = []

    async def complete(self, request):
        self.requests.append(request)
        result = self.responder(request)
        if isinstance(result, Exception):
            raise result
        return result


class SlowClient(FakeClient):
    """``FakeClient`` that takes *delay* seconds to answer each call."""

    def __init__(self, responder, delay):
        super().__init__(responder)
        self.delay = delay

    async def complete(self, request):
        self.requests.append(request)
        await asyncio.sleep(self.delay)
        result = self.responder(request)
        if isinstance(result, Exception):
            raise result
        return result


def answer_all(tags="[excited]"):
    """Responder that directs every index found in the prompt."""
    return lambda request: directions_json((i, tags) for i in prompt_indices(request))


def fail_all(message="service unavailable"):
    return lambda request: CompletionError(message)


@pytest.fixture
def scene():
    return SceneContext(title="The Keep", genre="fantasy", mood="tense")


@pytest.fixture
def sample_segments():
    """Narrator / dialogue / narrator, as parsed from a short tagged line."""
    return [
        Segment(index=0, kind=KIND_NARRATOR, speaker=NARRATOR, text="The knight said,"),
        Segment(index=1, kind=KIND_DIALOGUE, speaker="Roland", text="Hello there!"),
        Segment(index=2, kind=KIND_NARRATOR, speaker=NARRATOR, text="and smiled."),
    ]


def make_segments(count):
    return [
        Segment(
            index=i,
            kind=KIND_DIALOGUE if i % 2 else KIND_NARRATOR,
            speaker="Mira" if i % 2 else NARRATOR,
            text=f"Line number {i}.",
        )
        for i in range(count)
    ]
