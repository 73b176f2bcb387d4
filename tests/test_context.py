import asyncio
import logging

import pytest

from runbox import context as ctx
from runbox.protocol import encode_message
from runbox.schemas import Message


def _program(*kinds: str) -> str:
    lines = [f"print({encode_message('s', kind, [kind])!r})" for kind in kinds]
    return "\n".join(lines)


def test_failing_handler_does_not_stop_later_messages(caplog: pytest.LogCaptureFixture) -> None:
    received: list[str] = []

    async def scenario() -> None:
        done = asyncio.Event()
        context = ctx.SubprocessContext()

        def handler(_source: ctx.ExecutionContext, message: Message) -> None:
            received.append(message.type)
            if message.type == "log":
                raise RuntimeError("sink exploded")
            if message.type == "done":
                done.set()

        context.on_message(handler)
        await context.send(_program("log", "info", "done"))
        try:
            await asyncio.wait_for(done.wait(), timeout=20)
        finally:
            process = context.process
            context.destroy()
        if process is not None:
            _ = await process.wait()

    with caplog.at_level(logging.ERROR, logger="runbox.context"):
        asyncio.run(scenario())

    assert received == ["log", "info", "done"]
    assert "Message handler failed" in caplog.text


def test_killed_child_is_reaped() -> None:
    async def scenario() -> int | None:
        context = ctx.SubprocessContext()
        await context.send("import time\ntime.sleep(30)")
        process = context.process
        assert process is not None

        context.destroy()
        reapers = set(ctx._reap_tasks)
        assert reapers

        _ = await asyncio.wait_for(asyncio.gather(*reapers), timeout=20)
        await asyncio.sleep(0)
        assert not reapers & ctx._reap_tasks
        return process.returncode

    assert asyncio.run(scenario()) is not None
