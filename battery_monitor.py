import argparse
import asyncio
import logging
import shlex
import signal
import sys

from battery_state import ChargingState, default_reader, resolve_charging_state
from notify import AlertKind, NotificationWorker, Notifier
from shutdown import ShutdownController
from sound import AlertSoundDispatcher, AudioEngine, AudioEngineError, SoundCue

CHECK_PERIOD = 20  # seconds
MIN_PERIOD = 1
MAX_PERIOD = 24 * 60 * 60
SAFETY_WINDOW = 60  # seconds of low battery before shutting down

logger = logging.getLogger("battery-monitor")


def poll_period(value: str) -> int:
    try:
        seconds = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid period: {value!r}")
    if not MIN_PERIOD <= seconds <= MAX_PERIOD:
        raise argparse.ArgumentTypeError(
            f"period must be between {MIN_PERIOD} and {MAX_PERIOD} seconds"
        )
    return seconds


def command_line(value: str) -> list[str]:
    try:
        argv = shlex.split(value)
    except ValueError as e:
        raise argparse.ArgumentTypeError(f"invalid shutdown command {value!r}: {e}")
    if not argv:
        raise argparse.ArgumentTypeError("shutdown command can't be empty")
    return argv


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="battery-monitor",
        description="Battery Monitor polls the battery charging state, shows a "
        "notification for it, plays alert sounds and shuts the system down "
        "when the battery stays critically low",
        epilog="The window font is a Pango font description such as 'Sans Bold 24'. "
        "The shutdown command is usually '/sbin/shutdown', but it is there so you "
        "can indicate something like '/usr/bin/sudo /sbin/shutdown'.",
    )
    parser.add_argument("low_battery_sound", help="Sound played on low battery")
    parser.add_argument("start_shutdown_sound", help="Sound played when shutdown starts")
    parser.add_argument("stop_shutdown_sound", help="Sound played when shutdown is cancelled")
    parser.add_argument("window_font", help="Font used for the notification text")
    parser.add_argument("shutdown_command", type=command_line, help="Shutdown executable")
    parser.add_argument(
        "period",
        nargs="?",
        type=poll_period,
        default=CHECK_PERIOD,
        help=f"Seconds between battery checks (default: {CHECK_PERIOD})",
    )
    parser.add_argument("--debug", action="store_true", help="Enable debugging mode")
    return parser.parse_args(argv)


# --- Main Class ---
class BatteryMonitor:
    def __init__(
        self,
        reader,
        notifications: NotificationWorker,
        sounds: AlertSoundDispatcher,
        shutdown: ShutdownController,
        period: int = CHECK_PERIOD,
        safety_window: int = SAFETY_WINDOW,
    ) -> None:
        self.reader = reader
        self.notifications = notifications
        self.sounds = sounds
        self.shutdown = shutdown
        self.period = period
        self.safety_window = safety_window

        # --- State Tracking ---
        self.prev_state = ChargingState.INVALID
        self.warn_counter = 0
        self._wakeup = asyncio.Event()

    async def evaluate_state(self) -> ChargingState:
        state = resolve_charging_state(self.reader)
        logger.debug(f"Status: {state.value} (previous: {self.prev_state.value})")

        if state is ChargingState.DISCHARGING:
            self._discharging()

        elif state is ChargingState.CHARGED:
            self.notifications.show(AlertKind.BATTERY_CHARGED)
            self._reset()

        elif state is ChargingState.CHARGING:
            self.notifications.clear()
            self._reset()

        elif state is ChargingState.NO_BATTERY:
            self.notifications.clear()
            self._reset()
            logger.warning("Battery not present")
            self.notifications.show_temporary(AlertKind.BATTERY_NOT_PRESENT)

        elif state is ChargingState.INVALID:
            self.notifications.clear()
            self._reset()
            logger.warning("Unable to read charging state")
            self.notifications.show_temporary(AlertKind.CHARGING_STATE_UNREADABLE)

        else:
            logger.warning("Unknown charging state")
            self.notifications.show_temporary(AlertKind.UNKNOWN_CHARGING_STATE)

        self.prev_state = state
        return state

    def _reset(self) -> None:
        self.warn_counter = 0
        self.shutdown.stop()

    def _discharging(self) -> None:
        if self.prev_state is not ChargingState.DISCHARGING:
            # leaving another state takes its sign with it
            self.notifications.clear()
            if self.shutdown.active:
                self.warn_counter = 0

        low_limit = self.reader.design_capacity_low()
        if low_limit is None:
            logger.warning("Unable to read low capacity limit")
            self.notifications.show_temporary(AlertKind.LOW_CAPACITY_UNREADABLE)
            return

        remaining = self.reader.remaining_capacity()
        if remaining is None:
            logger.warning("Unable to get remaining capacity")
            self.notifications.show_temporary(AlertKind.REMAINING_CAPACITY_UNREADABLE)
            return

        if remaining >= low_limit:
            return

        self.notifications.show(AlertKind.LOW_BATTERY)
        self.warn_counter += 1
        logger.debug(
            f"Low battery: {remaining} < {low_limit}, "
            f"{self.warn_counter * self.period}s of {self.safety_window}s"
        )
        if self.warn_counter * self.period >= self.safety_window and not self.shutdown.active:
            self.shutdown.start()
        else:
            self.sounds.play(SoundCue.LOW_BATTERY)

    def wake(self) -> None:
        """Cut the current sleep short; the next check runs right away."""
        self._wakeup.set()

    async def sleep(self) -> None:
        try:
            await asyncio.wait_for(self._wakeup.wait(), timeout=self.period)
            logger.debug("Woken up before the end of the check period")
        except asyncio.TimeoutError:
            pass
        finally:
            self._wakeup.clear()

    async def run(self):
        logger.info(f"Battery Monitor checking every {self.period}s")
        while True:
            await self.evaluate_state()
            await self.sleep()


async def main(argv=None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level="DEBUG" if args.debug else "INFO",
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    try:
        engine = AudioEngine()
    except AudioEngineError as e:
        logger.error(f"Unable to initialize sound system: {e}")
        return 1

    sounds = AlertSoundDispatcher(
        engine,
        {
            SoundCue.LOW_BATTERY: args.low_battery_sound,
            SoundCue.SHUTDOWN_START: args.start_shutdown_sound,
            SoundCue.SHUTDOWN_STOP: args.stop_shutdown_sound,
        },
    )
    shutdown = ShutdownController(args.shutdown_command, sounds)

    notifications = NotificationWorker(Notifier(font=args.window_font))
    await notifications.start()

    monitor = BatteryMonitor(
        default_reader(), notifications, sounds, shutdown, period=args.period
    )
    asyncio.get_running_loop().add_signal_handler(signal.SIGUSR1, monitor.wake)

    await monitor.run()
    return 1  # unreachable


def run():
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        logger.info("Service stopped by user")
        sys.exit(0)


if __name__ == "__main__":
    run()
