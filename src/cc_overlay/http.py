from __future__ import annotations

from typing import Optional

import aiohttp

_session: Optional[aiohttp.ClientSession] = None


async def init_http_session(timeout: float = 15.0) -> aiohttp.ClientSession:
    global _session
    if _session is not None and not _session.closed:
        return _session
    # trust_env picks up HTTP(S)_PROXY and NO_PROXY from the environment.
    _session = aiohttp.ClientSession(
        timeout=aiohttp.ClientTimeout(total=timeout),
        trust_env=True,
    )
    return _session


async def close_http_session() -> None:
    global _session
    if _session is None:
        return
    await _session.close()
    _session = None


def get_http_session() -> aiohttp.ClientSession:
    if _session is None or _session.closed:
        raise RuntimeError("HTTP session not initialized")
    return _session


__all__ = ["close_http_session", "get_http_session", "init_http_session"]
