"""
Encoder process ownership.

spawn_encoder() starts one ffmpeg process reading image frames from stdin and
pushing a constant-rate stream to the ingest URL. The returned ProcessHandle
is the only way to reach that process: it exposes the pid and stdin, logs
stderr, reports unexpected exits, and release() tears down the process and
every descendant it started.
"""

from __future__ import annotations

import asyncio
from typing import Callable, List, Optional

import psutil

from core.config_loader import EncoderConfig
from shared.logging.logger import get_logger

log = get_logger("services.encoder", runtime="encoder")

ExitCallback = Callable[[Optional[int]], None]


class EncoderSpawnError(RuntimeError):
    pass


def build_encoder_args(config: EncoderConfig) -> List[str]:
    fps = str(config.fps)
    gop = str(config.fps * 2)

    return [
        config.ffmpeg_path,
        "-y",
        "-re",
        "-stream_loop", "-1",
        "-f", "image2pipe",
        "-r", fps,
        "-i", "-",
        "-i", config.audio_path,
        "-filter_complex", "[1:a]aloop=loop=-1:size=2e9[aout]",
        "-map", "0:v",
        "-map", "[aout]",
        "-c:v", "libx264",
        "-preset", config.preset,
        "-pix_fmt", "yuv420p",
        "-b:v", config.video_bitrate,
        "-maxrate", config.max_rate,
        "-bufsize", config.buffer_size,
        "-g", gop,
        "-keyint_min", gop,
        "-c:a", "aac",
        "-b:a", config.audio_bitrate,
        "-f", "flv",
        config.target_url,
    ]


def kill_descendants(pid: int, timeout: float) -> bool:
    """
    SIGKILL every descendant of pid and wait for them to go away.

    Blocking; run it in an executor. Returns False if any survive.
    """
    try:
        children = psutil.Process(pid).children(recursive=True)
    except psutil.NoSuchProcess:
        return True

    for child in children:
        try:
            child.kill()
        except psutil.NoSuchProcess:
            pass

    _, alive = psutil.wait_procs(children, timeout=timeout)
    if alive:
        log.error(f"Encoder descendants still alive after kill: {[p.pid for p in alive]}")
        return False
    return True


class ProcessHandle:
    def __init__(
        self,
        process: asyncio.subprocess.Process,
        *,
        terminate_timeout: float = 5.0,
        on_exit: Optional[ExitCallback] = None,
    ):
        self._process = process
        self._terminate_timeout = terminate_timeout
        self._on_exit = on_exit
        self._released = False

        self.pid: Optional[int] = process.pid

        self._stderr_task = asyncio.create_task(self._pump_stderr())
        self._exit_task = asyncio.create_task(self._watch_exit())

    # ------------------------------------------------------------

    @property
    def released(self) -> bool:
        return self._released

    @property
    def stdin(self) -> Optional[asyncio.StreamWriter]:
        if self._released:
            return None
        return self._process.stdin

    @property
    def writable(self) -> bool:
        stdin = self.stdin
        return stdin is not None and not stdin.is_closing()

    # ------------------------------------------------------------

    async def _pump_stderr(self) -> None:
        stream = self._process.stderr
        if stream is None:
            return

        while True:
            line = await stream.readline()
            if not line:
                break
            log.debug("FFmpeg: " + line.decode("utf-8", errors="replace").rstrip())

    async def _watch_exit(self) -> None:
        code = await self._process.wait()
        if self._released:
            return

        log.error(f"FFmpeg exited unexpectedly (pid={self.pid}, code={code})")
        if self._on_exit:
            self._on_exit(code)

    # ------------------------------------------------------------

    async def release(self) -> bool:
        """
        Close stdin and kill the encoder plus descendants. Idempotent.

        Returns False when termination could not be confirmed; that is
        logged and not retried.
        """
        if self._released:
            return True

        self._released = True
        pid, self.pid = self.pid, None
        log.warning(f"Killing FFmpeg process with PID: {pid}")

        stdin = self._process.stdin
        try:
            if stdin is not None:
                stdin.close()
        except Exception as e:
            log.error(f"Error cleaning up FFmpeg: {e}")

        ok = True
        if pid is not None:
            loop = asyncio.get_running_loop()
            ok = await loop.run_in_executor(
                None, kill_descendants, pid, self._terminate_timeout
            )

        try:
            self._process.kill()
        except ProcessLookupError:
            pass

        try:
            await asyncio.wait_for(self._process.wait(), self._terminate_timeout)
        except asyncio.TimeoutError:
            log.error(f"Failed to kill FFmpeg process {pid}: no exit after SIGKILL")
            ok = False

        for task in (self._stderr_task, self._exit_task):
            if not task.done():
                task.cancel()
        await asyncio.gather(self._stderr_task, self._exit_task, return_exceptions=True)

        if ok:
            log.debug("FFmpeg process killed")
        return ok


def _redact(args: List[str], secret: str) -> str:
    text = " ".join(args)
    return text.replace(secret, "****") if secret else text


async def spawn_encoder(
    config: EncoderConfig,
    *,
    on_exit: Optional[ExitCallback] = None,
) -> ProcessHandle:
    args = build_encoder_args(config)
    log.info(f"FFmpeg starting: {_redact(args, config.stream_key)}")

    try:
        process = await asyncio.create_subprocess_exec(
            *args,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        raise EncoderSpawnError(f"Failed to spawn {config.ffmpeg_path}: {e}") from e

    log.debug(f"Spawned FFmpeg (pid={process.pid})")
    return ProcessHandle(
        process,
        terminate_timeout=config.terminate_timeout,
        on_exit=on_exit,
    )
