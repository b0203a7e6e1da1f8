import asyncio
import logging
import os
import shutil
from enum import Enum

from tasks import spawn

logger = logging.getLogger("battery-monitor.sound")

# Command line PCM players, in order of preference
PLAYERS = ("paplay", "pw-play", "aplay")


class SoundCue(Enum):
    LOW_BATTERY = 0
    SHUTDOWN_START = 1
    SHUTDOWN_STOP = 2


class AudioEngineError(Exception):
    """Raised when no usable audio player exists on this system."""

    pass


class PlaybackError(Exception):
    pass


class AudioEngine:
    def __init__(self, player: str | None = None) -> None:
        candidates = (player,) if player else PLAYERS
        for candidate in candidates:
            path = shutil.which(candidate)
            if path:
                self.player = path
                break
        else:
            raise AudioEngineError(
                f"none of {', '.join(candidates)} is available in PATH"
            )
        logger.debug(f"Playing sounds with {self.player}")

    async def play(self, path: str) -> None:
        if not os.access(path, os.R_OK):
            raise PlaybackError(f"unable to open {path}")

        proc = await asyncio.create_subprocess_exec(
            self.player,
            path,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            _, stderr = await proc.communicate()
        finally:
            # reap the player on every way out, cancellation included
            if proc.returncode is None:
                proc.kill()
                await proc.wait()

        if proc.returncode != 0:
            reason = stderr.decode(errors="replace").strip() if stderr else ""
            raise PlaybackError(
                f"unable to play {path} (exit status {proc.returncode}) {reason}".rstrip()
            )


class AlertSoundDispatcher:
    """Plays cues in the background. Overlapping requests overlap."""

    def __init__(self, engine: AudioEngine, files: dict[SoundCue, str]) -> None:
        self.engine = engine
        self.files = files

    def play(self, cue: SoundCue) -> asyncio.Task:
        return spawn(self._play(cue), name=f"sound-{cue.name.lower()}")

    async def _play(self, cue: SoundCue) -> None:
        path = self.files[cue]
        logger.debug(f"Playing {cue.name} from {path}")
        try:
            await self.engine.play(path)
        except (PlaybackError, OSError) as e:
            logger.warning(f"Unable to play alert sound: {e}")
