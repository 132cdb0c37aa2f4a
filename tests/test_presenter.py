import asyncio

import pytest

from orderwatch.model.orderdetails import OrderLine, OrderPayload
from orderwatch.presenter import (
    IDLE, VISIBLE, ConfirmFailed, ConfirmUnavailable, NotificationPresenter,
)


def make_payload(order_id="o-1"):
    return OrderPayload(
        id=order_id,
        order_number="AK-0001",
        customer_name="Jean Dupont",
        total_amount=12000,
        timestamp="2026-10-19T12:00:00+00:00",
        items=(OrderLine("Mojito", 2, 4500), OrderLine("Chips", 1, 3000)),
    )


async def test_show_then_dismiss(audio):
    p = NotificationPresenter(audio)
    assert p.state == IDLE
    await p.show(make_payload())
    assert p.state == VISIBLE
    assert p.is_visible
    assert audio.is_playing
    p.dismiss()
    assert p.state == IDLE
    assert p.order_data is None
    assert audio.is_playing is False


async def test_dismiss_when_idle_still_stops_audio(audio):
    p = NotificationPresenter(audio)
    await audio.play_order_alert()
    p.dismiss()
    assert p.state == IDLE
    assert audio.is_playing is False


async def test_new_order_replaces_visible_one(audio):
    p = NotificationPresenter(audio)
    await p.show(make_payload("o-1"))
    await p.show(make_payload("o-2"))
    assert p.order_data.id == "o-2"
    p.dismiss()


async def test_confirm_success(audio):
    confirmed = []

    async def confirm(order_id):
        confirmed.append(order_id)

    p = NotificationPresenter(audio, confirm_order=confirm)
    await p.show(make_payload())
    assert await p.confirm() == "o-1"
    assert confirmed == ["o-1"]
    assert p.state == IDLE
    assert audio.is_playing is False


async def test_confirm_failure_stays_visible(audio):
    async def confirm(order_id):
        raise RuntimeError("network down")

    p = NotificationPresenter(audio, confirm_order=confirm)
    await p.show(make_payload())
    with pytest.raises(ConfirmFailed):
        await p.confirm()
    assert p.state == VISIBLE
    assert "network down" in p.last_error
    assert audio.is_playing
    p.dismiss()
    assert p.last_error is None


async def test_confirm_requires_callback_and_order(audio):
    p = NotificationPresenter(audio)
    await p.show(make_payload())
    with pytest.raises(ConfirmUnavailable):
        await p.confirm()

    async def confirm(order_id):
        pass

    idle = NotificationPresenter(audio, confirm_order=confirm)
    with pytest.raises(ConfirmUnavailable):
        await idle.confirm()


async def test_on_shown_failure_does_not_hide_order(audio):
    async def boom(payload):
        raise RuntimeError("history unavailable")

    p = NotificationPresenter(audio, on_shown=boom)
    await p.show(make_payload())
    assert p.is_visible


async def test_snapshot(audio):
    p = NotificationPresenter(audio)
    p.request_vibration((200, 100, 200))
    await p.show(make_payload())
    snap = p.snapshot()
    assert snap["state"] == VISIBLE
    assert snap["order_data"]["customer_name"] == "Jean Dupont"
    assert snap["order_data"]["items"][1]["name"] == "Chips"
    assert snap["can_confirm"] is False
    assert snap["alert_playing"] is True
    assert snap["vibrate"] == {"seq": 1, "pattern": [200, 100, 200]}


async def test_order_shown_while_confirming_stays_visible(audio):
    release = asyncio.Event()
    confirmed = []

    async def confirm(order_id):
        await release.wait()
        confirmed.append(order_id)

    p = NotificationPresenter(audio, confirm_order=confirm)
    await p.show(make_payload("o-1"))
    pending = asyncio.create_task(p.confirm())
    await asyncio.sleep(0)
    await p.show(make_payload("o-2"))
    release.set()
    assert await pending == "o-1"
    assert confirmed == ["o-1"]
    assert p.state == VISIBLE
    assert p.order_data.id == "o-2"
    assert audio.is_playing
    p.dismiss()


async def test_failed_confirm_does_not_flag_newer_order(audio):
    release = asyncio.Event()

    async def confirm(order_id):
        await release.wait()
        raise RuntimeError("network down")

    p = NotificationPresenter(audio, confirm_order=confirm)
    await p.show(make_payload("o-1"))
    pending = asyncio.create_task(p.confirm())
    await asyncio.sleep(0)
    await p.show(make_payload("o-2"))
    release.set()
    with pytest.raises(ConfirmFailed):
        await pending
    assert p.order_data.id == "o-2"
    assert p.last_error is None
    p.dismiss()
