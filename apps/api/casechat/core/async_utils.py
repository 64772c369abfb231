from __future__ import annotations

import asyncio
from typing import Coroutine, TypeVar

import anyio

T = TypeVar("T")


def run_async(coro: Coroutine[object, object, T], *, timeout: float | None = None) -> T:
    """
    Drive a coroutine to completion from synchronous service code.

    Sync FastAPI endpoints run in AnyIO worker threads, so the coroutine is
    handed back to the server's loop via anyio.from_thread. Scripts and tests
    without a worker thread get a fresh loop instead. Calling this from a
    coroutine is a bug (await it directly).
    """

    async def _bounded() -> T:
        if timeout is None:
            return await coro
        with anyio.fail_after(timeout):
            return await coro

    try:
        return anyio.from_thread.run(_bounded)
    except RuntimeError:
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            return anyio.run(_bounded)
        coro.close()
        raise RuntimeError("run_async called from async context; use await instead")
