import shutil
from pathlib import Path

import pytest

from reader_companion.cancellation import CancellationToken, await_cancellable
from reader_companion.models import ApiConfig
from reader_companion.storage import Storage

TEST_DATA_DIR = Path("data-tests")


class ScriptedLLM:
    """LLM double: returns queued replies in order and records every call.

    A queued Exception is raised instead of returned. While `gate` is set to
    an unset asyncio.Event, calls wait on it (abortable through the token).
    """

    def __init__(self, *replies: str | Exception) -> None:
        self.replies = list(replies)
        self.calls: list[tuple[str, str]] = []
        self.gate = None

    async def __call__(self, stage: str, prompt: str, token: CancellationToken | None = None) -> str:
        self.calls.append((stage, prompt))
        if self.gate is not None:
            await await_cancellable(self.gate.wait(), token)
        reply = self.replies.pop(0) if self.replies else ""
        if isinstance(reply, Exception):
            raise reply
        return reply


@pytest.fixture(autouse=True)
def clean_test_data():
    """Wipe data-tests/ before every test."""
    if TEST_DATA_DIR.exists():
        shutil.rmtree(TEST_DATA_DIR)
    yield
    # leave data-tests around after tests for inspection; CI can ignore it


@pytest.fixture
def storage() -> Storage:
    return Storage(TEST_DATA_DIR)


@pytest.fixture
def llm() -> ScriptedLLM:
    return ScriptedLLM()


@pytest.fixture
def api_config() -> ApiConfig:
    return ApiConfig(provider="openai", endpoint="http://llm.test/v1", api_key="sk-test", model="m1")
