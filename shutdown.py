import asyncio
import logging
import shlex

from sound import AlertSoundDispatcher, SoundCue
from tasks import spawn

logger = logging.getLogger("battery-monitor.shutdown")

SHUTDOWN_DELAY = "2"  # minutes


class ShutdownController:
    """Launches and cancels the system shutdown.

    ``active`` follows what was asked for, not what the command managed to
    do: a failed invocation is logged and the flag is left alone.
    """

    def __init__(
        self,
        argv: list[str],
        sounds: AlertSoundDispatcher,
        delay: str = SHUTDOWN_DELAY,
    ) -> None:
        self.argv = list(argv)
        self.sounds = sounds
        self.delay = delay
        self.active = False

    def start(self) -> None:
        if self.active:
            return
        self.active = True
        logger.info(f"Starting shutdown in {self.delay} minutes")
        spawn(self._invoke("-h", f"+{self.delay}"), name="shutdown-start")
        self.sounds.play(SoundCue.SHUTDOWN_START)

    def stop(self) -> None:
        if not self.active:
            return
        self.active = False
        logger.info("Cancelling shutdown")
        spawn(self._invoke("-c"), name="shutdown-stop")
        self.sounds.play(SoundCue.SHUTDOWN_STOP)

    async def _invoke(self, *args: str) -> None:
        cmdline = [*self.argv, *args]
        try:
            proc = await asyncio.create_subprocess_exec(*cmdline)
            returncode = await proc.wait()
        except OSError as e:
            logger.warning(f"Unable to launch {shlex.join(cmdline)}: {e}")
            return

        if returncode != 0:
            logger.warning(f"{shlex.join(cmdline)} exited with status {returncode}")
