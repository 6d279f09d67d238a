"""Root pytest configuration for all tests."""

from __future__ import annotations

import pytest

from tests.utils import ScriptedProvider
from turnloop.sandbox.local import LocalSandbox
from turnloop.session.options import SessionOptions
from turnloop.session.session import Session
from turnloop.store.json_store import JSONStore
from turnloop.store.memory import MemoryStore
from turnloop.tools.base import tool

# asyncio_mode = "auto" is set in pyproject.toml
pytest_plugins = ("pytest_asyncio",)


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def provider():
    return ScriptedProvider()


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
async def json_store(tmp_path):
    store = JSONStore(tmp_path / "store", flush_interval=0.01)
    yield store
    await store.close()


@pytest.fixture
def sandbox(tmp_path):
    work_dir = tmp_path / "work"
    work_dir.mkdir()
    return LocalSandbox(work_dir, watch_poll_interval=0.05)


@pytest.fixture
def calls():
    """Names of executed tools, in execution order."""
    return []


@pytest.fixture
def ls_tool(calls):
    @tool(description="List files", readonly=True)
    async def ls(path: str = ".") -> list[str]:
        calls.append("ls")
        return ["a.txt", "b.txt"]

    return ls


@pytest.fixture
def write_tool(calls):
    @tool(description="Write a file", readonly=False)
    async def write(path: str, content: str) -> str:
        calls.append("write")
        return f"wrote {path}"

    return write


@pytest.fixture
async def make_session(provider, memory_store, sandbox):
    """Factory for sessions backed by the memory store (closed on teardown)."""
    created: list[Session] = []

    async def make(session_id: str = "s1", *, store=None, tools=(), options=None, **kwargs) -> Session:
        session = await Session.create(
            session_id,
            provider,
            store or memory_store,
            sandbox,
            tools=tools,
            options=options or SessionOptions(),
            **kwargs,
        )
        created.append(session)
        return session

    yield make
    for session in created:
        await session.close()
