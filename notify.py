import asyncio
import logging
from dataclasses import dataclass
from enum import Enum, auto
from html import escape

from dbus_next.aio.message_bus import MessageBus
from dbus_next.constants import BusType
from dbus_next.errors import (
    AuthError,
    DBusError,
    InterfaceNotFoundError,
    InvalidAddressError,
)
from dbus_next.signature import Variant

from tasks import spawn

logger = logging.getLogger("battery-monitor.notify")

NTFY_NAME = "org.freedesktop.Notifications"
NTFY_PATH = "/org/freedesktop/Notifications"

APP_NAME = "Battery Monitor"

URGENCY_NORMAL = 1
URGENCY_CRITICAL = 2

# NotificationClosed reasons
CLOSED_EXPIRED = 1
CLOSED_DISMISSED = 2
CLOSED_BY_CALL = 3
CLOSED_UNDEFINED = 4

# closed by anyone but us: put it back
REDRAW_REASONS = (CLOSED_EXPIRED, CLOSED_DISMISSED, CLOSED_UNDEFINED)

TEMPORARY_DWELL = 5  # seconds


class AlertKind(Enum):
    BATTERY_CHARGED = auto()
    LOW_BATTERY = auto()
    LOW_CAPACITY_UNREADABLE = auto()
    REMAINING_CAPACITY_UNREADABLE = auto()
    BATTERY_NOT_PRESENT = auto()
    CHARGING_STATE_UNREADABLE = auto()
    UNKNOWN_CHARGING_STATE = auto()


MESSAGES = {
    AlertKind.BATTERY_CHARGED: "Battery charged",
    AlertKind.LOW_BATTERY: "LOW BATTERY!",
    AlertKind.LOW_CAPACITY_UNREADABLE: "Unable to read low capacity limit",
    AlertKind.REMAINING_CAPACITY_UNREADABLE: "Unable to get remaining capacity",
    AlertKind.BATTERY_NOT_PRESENT: "Battery not present",
    AlertKind.CHARGING_STATE_UNREADABLE: "Unable to read charging state",
    AlertKind.UNKNOWN_CHARGING_STATE: "Unknown charging state",
}

ICONS = {
    AlertKind.BATTERY_CHARGED: "battery-full-charged-symbolic",
    AlertKind.LOW_BATTERY: "battery-caution-symbolic",
}
DEFAULT_ICON = "battery-missing-symbolic"

URGENCIES = {
    AlertKind.LOW_BATTERY: URGENCY_CRITICAL,
}


class Notifier:
    """Thin wrapper over the session bus notification service."""

    def __init__(self, font: str | None = None):
        self.interface = None
        self.font = font
        self.markup = False

    async def connect(self):
        try:
            session_bus = await MessageBus(bus_type=BusType.SESSION).connect()
            ntfy_introspect = await session_bus.introspect(NTFY_NAME, NTFY_PATH)
            ntfy_proxy = session_bus.get_proxy_object(
                NTFY_NAME, NTFY_PATH, ntfy_introspect
            )
            self.interface = ntfy_proxy.get_interface(NTFY_NAME)
            capabilities = await self.interface.call_get_capabilities()
        except (
            InterfaceNotFoundError,
            InvalidAddressError,
            AuthError,
            DBusError,
            OSError,
        ) as e:
            logger.warning(f"Notification setup failed: {e}")
            self.interface = None
            return False

        self.markup = "body-markup" in capabilities
        return True

    def on_closed(self, callback):
        self.interface.on_notification_closed(callback)

    def format_body(self, message: str) -> str:
        if not (self.markup and self.font):
            return message
        return f'<span font_desc="{escape(self.font)}">{escape(message)}</span>'

    async def send(self, summary, body, urgency=URGENCY_NORMAL, icon="battery-caution"):
        hints = {"urgency": Variant("y", urgency)}
        # 0: never expires, the worker decides when it goes away
        return await self.interface.call_notify(
            APP_NAME,
            0,
            icon,
            summary,
            self.format_body(body),
            [],
            hints,
            0,
        )

    async def close(self, notification_id):
        await self.interface.call_close_notification(notification_id)


class NotificationHandle:
    """One displayed alert. Compared by identity, never by alert."""

    __slots__ = ("alert", "notification_id")

    def __init__(self, alert: AlertKind, notification_id: int) -> None:
        self.alert = alert
        self.notification_id = notification_id

    def __repr__(self):
        return f"<NotificationHandle {self.alert.name} id={self.notification_id}>"


SHOW = "show"
CLEAR = "clear"


@dataclass
class Command:
    action: str
    alert: AlertKind | None = None
    # CLEAR only acts when this is still the displayed handle
    handle: NotificationHandle | None = None
    reply: asyncio.Future | None = None


class NotificationWorker:
    """Owns the single on-screen alert.

    Every visibility change goes through one queue and is applied by one
    task, so callers never see two alerts at once. A second task listens
    for the notification being closed behind our back and puts it back.
    """

    def __init__(self, notifier: Notifier, dwell: float = TEMPORARY_DWELL) -> None:
        self.notifier = notifier
        self.dwell = dwell
        self.enabled = False
        self.commands: asyncio.Queue[Command] = asyncio.Queue()
        self._redraws: asyncio.Queue[tuple[int, int]] = asyncio.Queue()
        self._current: NotificationHandle | None = None
        self._display_lock = asyncio.Lock()
        self._workers: list[asyncio.Task] = []

    @property
    def visible(self) -> bool:
        return self._current is not None

    @property
    def current_alert(self) -> AlertKind | None:
        return self._current.alert if self._current else None

    async def start(self) -> bool:
        if not await self.notifier.connect():
            logger.warning("Notification service unavailable, alerts go to the log only")
            return False

        self.notifier.on_closed(self._on_closed)
        self.enabled = True
        self._workers = [
            asyncio.create_task(self._run(), name="notification-worker"),
            asyncio.create_task(self._redraw_listener(), name="notification-redraw"),
        ]
        return True

    def show(self, alert: AlertKind) -> None:
        if not self.enabled:
            logger.warning(f"[no display] {MESSAGES[alert]}")
            return
        self.commands.put_nowait(Command(SHOW, alert))

    def clear(self) -> None:
        if not self.enabled:
            return
        self.commands.put_nowait(Command(CLEAR))

    def show_temporary(self, alert: AlertKind) -> asyncio.Task | None:
        if not self.enabled:
            logger.warning(f"[no display] {MESSAGES[alert]}")
            return None
        return spawn(self._show_for(alert), name=f"temporary-{alert.name.lower()}")

    async def join(self) -> None:
        """Wait until every command queued so far has been applied."""
        await self.commands.join()

    async def _show_for(self, alert: AlertKind) -> None:
        reply = asyncio.get_running_loop().create_future()
        self.commands.put_nowait(Command(SHOW, alert, reply=reply))
        handle = await reply
        if handle is None:
            return
        await asyncio.sleep(self.dwell)
        # no-op if anything else was displayed in the meantime
        self.commands.put_nowait(Command(CLEAR, handle=handle))

    async def _run(self) -> None:
        while True:
            command = await self.commands.get()
            result = None
            try:
                async with self._display_lock:
                    result = await self._apply(command)
            except Exception as e:
                logger.warning(f"Unable to {command.action} notification: {e}")
            finally:
                if command.reply is not None and not command.reply.done():
                    command.reply.set_result(result)
                self.commands.task_done()

    async def _apply(self, command: Command) -> NotificationHandle | None:
        if command.action == SHOW:
            if self._current is not None and self._current.alert is command.alert:
                return self._current
            if self._current is not None:
                await self._hide()
            return await self._display(command.alert)

        if command.action == CLEAR:
            if self._current is None:
                return None
            if command.handle is not None and command.handle is not self._current:
                logger.debug(f"{command.handle} already replaced, not clearing")
                return None
            await self._hide()
            return None

        raise ValueError(f"unknown notification command {command.action!r}")

    async def _display(self, alert: AlertKind) -> NotificationHandle:
        notification_id = await self.notifier.send(
            APP_NAME,
            MESSAGES[alert],
            URGENCIES.get(alert, URGENCY_NORMAL),
            ICONS.get(alert, DEFAULT_ICON),
        )
        self._current = NotificationHandle(alert, notification_id)
        logger.debug(f"Showing {self._current}")
        return self._current

    async def _hide(self) -> None:
        handle, self._current = self._current, None
        logger.debug(f"Hiding {handle}")
        await self.notifier.close(handle.notification_id)

    def _on_closed(self, notification_id, reason):
        self._redraws.put_nowait((notification_id, reason))

    async def _redraw_listener(self) -> None:
        while True:
            notification_id, reason = await self._redraws.get()
            if reason not in REDRAW_REASONS:
                continue
            async with self._display_lock:
                current = self._current
                if current is None or current.notification_id != notification_id:
                    continue
                logger.debug(f"{current} closed by the server (reason {reason}), redrawing")
                try:
                    current.notification_id = await self.notifier.send(
                        APP_NAME,
                        MESSAGES[current.alert],
                        URGENCIES.get(current.alert, URGENCY_NORMAL),
                        ICONS.get(current.alert, DEFAULT_ICON),
                    )
                except Exception as e:
                    logger.warning(f"Unable to redraw notification: {e}")
