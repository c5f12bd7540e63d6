"""Shared test fixtures for the sentence turn engine."""
import pytest

from core.engine import TurnEngine
from core.retry import RetryPolicy
from providers.factory import ProviderRegistry

from tests.fakes import FakeClock, FakeSleep, Recorder, ScriptedProvider


# ══════════════════════════════════════════════════════════════
#  FIXTURES
# ══════════════════════════════════════════════════════════════

@pytest.fixture
def openai_provider() -> ScriptedProvider:
    return ScriptedProvider("openai")


@pytest.fixture
def gemini_provider() -> ScriptedProvider:
    return ScriptedProvider("gemini")


@pytest.fixture
def registry(openai_provider, gemini_provider) -> ProviderRegistry:
    reg = ProviderRegistry()
    reg.register(openai_provider)
    reg.register(gemini_provider)
    return reg


@pytest.fixture
def recorder() -> Recorder:
    return Recorder()


@pytest.fixture
def fake_sleep() -> FakeSleep:
    return FakeSleep()


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def retry_policy(fake_sleep, fake_clock) -> RetryPolicy:
    return RetryPolicy(jitter=0.0, sleep=fake_sleep, clock=fake_clock)


@pytest.fixture
def make_engine(registry, recorder, retry_policy, fake_sleep, fake_clock):
    def factory(**overrides) -> TurnEngine:
        options = dict(
            system_prompt="You are a test assistant.",
            max_sentences=4,
            retry=retry_policy,
            min_request_interval=0.0,
            sleep=fake_sleep,
            clock=fake_clock,
        )
        options.update(overrides)
        return TurnEngine(registry, recorder.callbacks(), **options)
    return factory
