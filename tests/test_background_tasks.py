import asyncio

import pytest

from background_tasks import BackgroundTaskManager, notify_admins, send_logged


@pytest.mark.asyncio
async def test_failing_task_is_contained() -> None:
    manager = BackgroundTaskManager(max_concurrent_tasks=5)

    async def boom():
        raise RuntimeError("smtp down")

    task_id = await manager.create_task(boom(), task_name="mail")
    assert task_id == "task_1_mail"

    await manager.drain(timeout=1)
    assert manager.get_active_task_count() == 0


@pytest.mark.asyncio
async def test_rejects_tasks_at_capacity() -> None:
    manager = BackgroundTaskManager(max_concurrent_tasks=1)
    release = asyncio.Event()

    assert await manager.create_task(release.wait(), task_name="first") is not None
    assert await manager.create_task(release.wait(), task_name="second") is None
    assert manager.rejected == 1

    release.set()
    await manager.drain(timeout=1)


@pytest.mark.asyncio
async def test_drain_cancels_stragglers() -> None:
    manager = BackgroundTaskManager()
    await manager.create_task(asyncio.sleep(60), task_name="slow")

    await manager.drain(timeout=0.01)
    await asyncio.sleep(0.01)

    assert manager.get_active_task_count() == 0


@pytest.mark.asyncio
async def test_notify_admins_sends_to_each(db, mailer) -> None:
    message = {"subject": "New exhibitor", "text": "details"}

    results = await notify_admins(mailer, ["a@example.com", "", "b@example.com"], message)

    assert [r["success"] for r in results] == [True, True]
    assert sorted(row["to"] for row in db.mail_logs.docs) == ["a@example.com", "b@example.com"]
    assert await notify_admins(mailer, [], message) == []


@pytest.mark.asyncio
async def test_send_logged_reports_failure(mailer) -> None:
    result = await send_logged(mailer, "", {"subject": "x"})
    assert result["success"] is False
