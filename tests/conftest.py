import asyncio
import inspect
import os
import sys
from pathlib import Path

# Must be set before any import that reads settings
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("LOG_JSON", "false")
os.environ.pop("OPENAI_API_KEY", None)

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from nodeflow.config import reset_settings_cache  # noqa: E402
from nodeflow.service.runtime import reset_runtime_for_tests  # noqa: E402


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_settings_cache()
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


class RecordingSleep:
    """Stands in for asyncio.sleep in retry policies; records requested delays."""

    def __init__(self):
        self.delays = []

    async def __call__(self, seconds):
        self.delays.append(seconds)


@pytest.fixture
def recording_sleep():
    return RecordingSleep()


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
