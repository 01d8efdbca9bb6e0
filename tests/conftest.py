"""Shared test fixtures for clawgate."""

from __future__ import annotations

import pytest

from clawgate.errors import ChannelError
from clawgate.types import InboundMessage, RegisteredGroup

# ---------------------------------------------------------------------------
# Shared helpers (plain functions, not fixtures, importable by test files)
# ---------------------------------------------------------------------------

# Cached property names that must be set via __dict__ (not model_construct).
_CACHED_PROPERTY_NAMES = frozenset(
    {
        "project_root",
        "groups_dir",
        "data_dir",
        "store_dir",
        "ipc_dir",
        "timezone",
    }
)


def make_settings(**overrides):
    """Create a Settings object with sensible defaults for testing.

    Accepts both model fields (agent, router, etc.) and cached property
    overrides (project_root, data_dir, groups_dir, etc.).

    Usage::

        s = make_settings(data_dir=tmp_path)
        s = make_settings(router=RouterConfig(main_group_folder="ops"))
        s = make_settings(groups_dir=tmp_path / "groups", ipc_dir=tmp_path / "ipc")
    """
    from clawgate.config import (
        AgentConfig,
        ContainerConfig,
        EmailConfig,
        HostChangesConfig,
        IntervalsConfig,
        LoggingConfig,
        RouterConfig,
        SchedulerConfig,
        Settings,
        SlackConfig,
        WhatsAppConfig,
    )

    cached = {k: overrides.pop(k) for k in list(overrides) if k in _CACHED_PROPERTY_NAMES}
    cached.setdefault("timezone", "UTC")

    defaults = {
        "agent": AgentConfig(),
        "router": RouterConfig(),
        "container": ContainerConfig(),
        "intervals": IntervalsConfig(),
        "scheduler": SchedulerConfig(),
        "email": EmailConfig(),
        "slack": SlackConfig(),
        "whatsapp": WhatsAppConfig(),
        "host_changes": HostChangesConfig(),
        "logging": LoggingConfig(),
        "plugins": {},
    }
    defaults.update(overrides)
    s = Settings.model_construct(**defaults)

    for key, value in cached.items():
        s.__dict__[key] = value

    return s


def make_group(folder: str, *, trigger: str = "", name: str | None = None) -> RegisteredGroup:
    return RegisteredGroup(
        name=name or folder.title(),
        folder=folder,
        trigger=trigger,
        added_at="2024-01-01T00:00:00+00:00",
    )


class MockIpcDeps:
    """Records every host service call the IPC handlers make."""

    def __init__(self, state):
        self._state = state
        self.sent: list[tuple[str, str]] = []
        self.typing: list[tuple[str, float]] = []
        self.synced: list[bool] = []
        self.direct: list[tuple[str, str]] = []
        self.direct_error: str | None = None

    @property
    def state(self):
        return self._state

    async def send_text(self, jid: str, text: str) -> bool:
        self.sent.append((jid, text))
        return True

    def start_typing(self, jid: str, duration: float) -> None:
        self.typing.append((jid, duration))

    async def sync_group_metadata(self, force: bool) -> None:
        self.synced.append(force)

    async def send_direct_message(self, user_id: str, text: str) -> None:
        if self.direct_error:
            raise ChannelError(self.direct_error)
        self.direct.append((user_id, text))


# ---------------------------------------------------------------------------
# Autouse fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def reset_settings(monkeypatch):
    """Ensure each test starts with a clean Settings singleton.

    Uses ``make_settings()`` to build from pure defaults — no config.toml,
    no .env, no file I/O. Tests are fully isolated from production config.
    """
    safe = make_settings()
    monkeypatch.setattr("clawgate.config._settings", safe)


@pytest.fixture(autouse=True, scope="session")
def _close_test_database():
    """Close the aiosqlite connection after all tests complete.

    Uses ``stop()`` + thread join rather than ``await close()`` because
    the connection was created on a function-scoped event loop.
    """
    yield
    import clawgate.db._connection as db_conn

    if db_conn._db is not None:
        db_conn._db.stop()
        if db_conn._db._thread is not None and db_conn._db._thread.is_alive():
            db_conn._db._thread.join(timeout=2)
        db_conn._db = None


# ---------------------------------------------------------------------------
# Reusable fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def dirs(tmp_path, monkeypatch):
    """Point groups/, data/ipc/ and store/ at a temp tree. Returns the settings."""
    s = make_settings(
        project_root=tmp_path,
        groups_dir=tmp_path / "groups",
        data_dir=tmp_path / "data",
        ipc_dir=tmp_path / "data" / "ipc",
        store_dir=tmp_path / "store",
    )
    monkeypatch.setattr("clawgate.config._settings", s)
    return s


@pytest.fixture
def make_msg():
    """Factory fixture for creating test messages with defaults."""

    def _make(
        *,
        id: str = "1",
        chat_jid: str = "group@g.us",
        sender: str = "123@s.whatsapp.net",
        sender_name: str = "Alice",
        content: str = "hello",
        timestamp: str = "2024-01-01T00:00:00.000Z",
        is_from_me: bool = False,
    ) -> InboundMessage:
        return InboundMessage(
            id=id,
            chat_jid=chat_jid,
            sender=sender,
            sender_name=sender_name,
            content=content,
            timestamp=timestamp,
            is_from_me=is_from_me,
        )

    return _make
