import asyncio
import logging

import pytest

from varnishconf.__main__ import track_task


class TestTrackTask:
    @pytest.mark.asyncio
    async def test_reference_held_until_done(self):
        tasks: set[asyncio.Task] = set()
        release = asyncio.Event()
        task = track_task(tasks, asyncio.get_running_loop().create_task(release.wait()), "refresh")

        assert tasks == {task}
        release.set()
        await task
        await asyncio.sleep(0)
        assert tasks == set()

    @pytest.mark.asyncio
    async def test_failure_is_logged(self, caplog):
        async def explode():
            raise RuntimeError("watcher gone")

        tasks: set[asyncio.Task] = set()
        with caplog.at_level(logging.ERROR, logger="varnishconf.entrypoint"):
            task = track_task(tasks, asyncio.get_running_loop().create_task(explode()), "SIGHUP refresh")
            await asyncio.gather(task, return_exceptions=True)
            await asyncio.sleep(0)

        assert tasks == set()
        assert "SIGHUP refresh failed: watcher gone" in caplog.text

    @pytest.mark.asyncio
    async def test_cancelled_task_is_dropped_quietly(self, caplog):
        tasks: set[asyncio.Task] = set()
        task = track_task(tasks, asyncio.get_running_loop().create_task(asyncio.sleep(30)), "refresh")
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        await asyncio.sleep(0)

        assert tasks == set()
        assert "failed" not in caplog.text
