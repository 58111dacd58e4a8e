from typing import Callable, List, Union

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from database import Base
from main import app
from routers import rate_limit


Handler = Callable[[str], Union[str, BaseException]]


class ScriptedGenerationService:
    """Generation service stub answering each prompt through ``handler``.

    A handler may return reply text or an exception instance to raise.
    """

    def __init__(self, handler: Handler) -> None:
        self.handler = handler
        self.prompts: List[str] = []

    async def send(self, prompt: str) -> str:
        self.prompts.append(prompt)
        reply = self.handler(prompt)
        if isinstance(reply, BaseException):
            raise reply
        return reply


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


@pytest.fixture(autouse=True)
def reset_local_rate_limit_counters():
    """Keep in-memory rate-limit state isolated between tests."""
    previous = getattr(app.state, "disable_rate_limits", False)
    app.state.disable_rate_limits = True
    rate_limit._local_counters.clear()
    yield
    rate_limit._local_counters.clear()
    app.state.disable_rate_limits = previous


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def scripted_service() -> Callable[[Handler], ScriptedGenerationService]:
    return ScriptedGenerationService


@pytest_asyncio.fixture
async def session_maker(tmp_path):
    db_path = tmp_path / "coursesmith_test.db"
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}")
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield maker

    await engine.dispose()
