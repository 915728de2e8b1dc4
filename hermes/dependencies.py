from __future__ import annotations

from collections.abc import AsyncIterator

from .core.config import Settings, get_settings
from .orchestration.session import HermesSession

_session_singleton: HermesSession | None = None


def get_session_singleton(settings: Settings) -> HermesSession:
    global _session_singleton
    if _session_singleton is None:
        _session_singleton = HermesSession.from_settings(settings)
    return _session_singleton


def reset_session_singleton() -> HermesSession | None:
    global _session_singleton
    session, _session_singleton = _session_singleton, None
    return session


async def get_hermes_session() -> AsyncIterator[HermesSession]:
    yield get_session_singleton(get_settings())
