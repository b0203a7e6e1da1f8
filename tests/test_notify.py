import asyncio

import pytest
from dbus_next.errors import AuthError

import notify
import tasks
from notify import (
    CLOSED_BY_CALL,
    CLOSED_DISMISSED,
    CLOSED_EXPIRED,
    MESSAGES,
    AlertKind,
    NotificationWorker,
    Notifier,
)


class FakeNotifier:
    """Records notifications and counts any shown over another."""

    def __init__(self, connected=True):
        self.connected = connected
        self.open = {}
        self.shown = []
        self.overlaps = 0
        self.callback = None
        self._ids = 0

    async def connect(self):
        return self.connected

    def on_closed(self, callback):
        self.callback = callback

    async def send(self, summary, body, urgency, icon):
        await asyncio.sleep(0)
        if self.open:
            self.overlaps += 1
        self._ids += 1
        self.open[self._ids] = body
        self.shown.append(body)
        return self._ids

    async def close(self, notification_id):
        await asyncio.sleep(0)
        del self.open[notification_id]
        self.callback(notification_id, CLOSED_BY_CALL)

    def displayed(self):
        return list(self.open.values())


@pytest.fixture
async def display():
    notifier = FakeNotifier()
    worker = NotificationWorker(notifier, dwell=0.05)
    assert await worker.start()
    yield notifier, worker
    for task in worker._workers:
        task.cancel()


async def test_show_is_idempotent(display):
    notifier, worker = display
    worker.show(AlertKind.LOW_BATTERY)
    worker.show(AlertKind.LOW_BATTERY)
    await worker.join()

    assert notifier.shown == [MESSAGES[AlertKind.LOW_BATTERY]]
    assert worker.visible
    assert worker.current_alert is AlertKind.LOW_BATTERY


async def test_show_replaces_other_alert(display):
    notifier, worker = display
    worker.show(AlertKind.LOW_BATTERY)
    worker.show(AlertKind.BATTERY_CHARGED)
    await worker.join()

    assert notifier.displayed() == [MESSAGES[AlertKind.BATTERY_CHARGED]]
    assert worker.current_alert is AlertKind.BATTERY_CHARGED


async def test_clear(display):
    notifier, worker = display
    worker.clear()
    worker.show(AlertKind.BATTERY_CHARGED)
    worker.clear()
    worker.clear()
    await worker.join()

    assert notifier.displayed() == []
    assert not worker.visible
    assert worker.current_alert is None


async def test_never_two_alerts_at_once(display):
    notifier, worker = display
    sequence = [AlertKind.LOW_BATTERY, None, AlertKind.BATTERY_CHARGED, AlertKind.LOW_BATTERY]
    for alert in sequence * 5:
        if alert is None:
            worker.clear()
        else:
            worker.show(alert)
        worker.show_temporary(AlertKind.UNKNOWN_CHARGING_STATE)
    await asyncio.sleep(0.01)
    await tasks.drain()
    await worker.join()

    assert notifier.overlaps == 0
    assert len(notifier.displayed()) <= 1


async def test_temporary_alert_clears_itself(display):
    notifier, worker = display
    await worker.show_temporary(AlertKind.CHARGING_STATE_UNREADABLE)
    await worker.join()

    assert notifier.shown == [MESSAGES[AlertKind.CHARGING_STATE_UNREADABLE]]
    assert not worker.visible


async def test_temporary_alert_leaves_later_alert_alone(display):
    notifier, worker = display
    task = worker.show_temporary(AlertKind.UNKNOWN_CHARGING_STATE)
    await asyncio.sleep(0.01)
    await worker.join()
    assert worker.current_alert is AlertKind.UNKNOWN_CHARGING_STATE

    worker.show(AlertKind.LOW_BATTERY)
    await task
    await worker.join()

    assert worker.current_alert is AlertKind.LOW_BATTERY
    assert notifier.displayed() == [MESSAGES[AlertKind.LOW_BATTERY]]


async def test_temporary_alert_after_clear_and_show_of_same_kind(display):
    notifier, worker = display
    task = worker.show_temporary(AlertKind.BATTERY_NOT_PRESENT)
    await asyncio.sleep(0.01)
    await worker.join()

    # same alert, new handle: the old timer must not remove it
    worker.clear()
    worker.show(AlertKind.BATTERY_NOT_PRESENT)
    await task
    await worker.join()

    assert worker.current_alert is AlertKind.BATTERY_NOT_PRESENT
    assert len(notifier.shown) == 2


async def test_redraw_after_server_closes_notification(display):
    notifier, worker = display
    worker.show(AlertKind.LOW_BATTERY)
    await worker.join()

    (notification_id,) = notifier.open
    del notifier.open[notification_id]
    notifier.callback(notification_id, CLOSED_DISMISSED)
    await asyncio.sleep(0.01)

    assert notifier.displayed() == [MESSAGES[AlertKind.LOW_BATTERY]]
    assert worker.current_alert is AlertKind.LOW_BATTERY

    # the redrawn notification is still the one a clear removes
    worker.clear()
    await worker.join()
    assert notifier.displayed() == []


async def test_redraw_after_notification_expires(display):
    notifier, worker = display
    worker.show(AlertKind.BATTERY_CHARGED)
    await worker.join()

    (notification_id,) = notifier.open
    del notifier.open[notification_id]
    notifier.callback(notification_id, CLOSED_EXPIRED)
    await asyncio.sleep(0.01)

    assert notifier.displayed() == [MESSAGES[AlertKind.BATTERY_CHARGED]]


async def test_redraw_ignores_stale_notifications(display):
    notifier, worker = display
    worker.show(AlertKind.LOW_BATTERY)
    await worker.join()

    notifier.callback(12345, CLOSED_DISMISSED)
    await asyncio.sleep(0.01)

    assert notifier.shown == [MESSAGES[AlertKind.LOW_BATTERY]]


async def test_display_errors_do_not_stop_the_worker(display, caplog):
    notifier, worker = display

    async def broken(*args):
        raise OSError("bus went away")

    send = notifier.send
    notifier.send = broken
    worker.show(AlertKind.LOW_BATTERY)
    await worker.join()
    assert not worker.visible
    assert "Unable to show notification" in caplog.text

    notifier.send = send
    worker.show(AlertKind.BATTERY_CHARGED)
    await worker.join()
    assert worker.current_alert is AlertKind.BATTERY_CHARGED


async def test_disabled_worker_logs_only(caplog):
    notifier = FakeNotifier(connected=False)
    worker = NotificationWorker(notifier)

    assert not await worker.start()
    worker.show(AlertKind.LOW_BATTERY)
    worker.clear()
    assert worker.show_temporary(AlertKind.BATTERY_NOT_PRESENT) is None

    assert worker.commands.empty()
    assert notifier.shown == []
    assert MESSAGES[AlertKind.LOW_BATTERY] in caplog.text
    assert MESSAGES[AlertKind.BATTERY_NOT_PRESENT] in caplog.text


async def test_rejected_bus_authentication_disables_worker(monkeypatch, caplog):
    class RejectingBus:
        def __init__(self, bus_type):
            pass

        async def connect(self):
            raise AuthError("authentication failed: REJECTED")

    monkeypatch.setattr(notify, "MessageBus", RejectingBus)
    worker = NotificationWorker(Notifier())

    assert not await worker.start()
    assert not worker.enabled
    assert "REJECTED" in caplog.text

    worker.show(AlertKind.LOW_BATTERY)
    assert worker.commands.empty()


def test_font_markup():
    notifier = Notifier(font="Sans Bold 24")
    assert notifier.format_body("LOW BATTERY!") == "LOW BATTERY!"

    notifier.markup = True
    assert notifier.format_body("a < b") == '<span font_desc="Sans Bold 24">a &lt; b</span>'


def test_every_alert_has_a_message():
    assert set(MESSAGES) == set(AlertKind)
