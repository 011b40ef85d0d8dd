"""
Background removal through an external tool.

`BackgroundRemovalService` is the seam the pipeline depends on, so the
subprocess mechanism can be swapped for a library call or remote service.
`SubprocessBackgroundRemover` runs a command such as `rembg i <in> <out>`
without blocking the event loop and always reaps the child it starts.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
import asyncio
import logging
from pathlib import Path
import shlex
from typing import List, Sequence, Union

from . import errors

logger = logging.getLogger(__name__)

STDERR_LOG_LIMIT = 2000


class BackgroundRemovalService(ABC):
    @abstractmethod
    async def remove(self, input_path: Path, output_path: Path) -> Path:
        """Write a transparent-background PNG of `input_path` to `output_path`."""


class SubprocessBackgroundRemover(BackgroundRemovalService):
    def __init__(self, command: Union[str, Sequence[str]], timeout_seconds: float) -> None:
        self.command: List[str] = shlex.split(command) if isinstance(command, str) else list(command)
        self.timeout_seconds = timeout_seconds

    def build_args(self, input_path: Path, output_path: Path) -> List[str]:
        return [arg.format(input=str(input_path), output=str(output_path)) for arg in self.command]

    async def remove(self, input_path: Path, output_path: Path) -> Path:
        args = self.build_args(input_path, output_path)
        try:
            proc = await asyncio.create_subprocess_exec(
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            logger.error("background removal: could not launch %s: %s", args[0], exc)
            raise errors.BackgroundRemovalFailed() from exc

        logger.debug("background removal: started pid=%s for %s", proc.pid, input_path)
        try:
            _, stderr = await asyncio.wait_for(proc.communicate(), timeout=self.timeout_seconds)
        except asyncio.TimeoutError as exc:
            await _terminate(proc)
            logger.error(
                "background removal: pid=%s exceeded %.1fs and was killed", proc.pid, self.timeout_seconds
            )
            raise errors.BackgroundRemovalTimeout() from exc
        except asyncio.CancelledError:
            await asyncio.shield(_terminate(proc))
            logger.info("background removal: pid=%s cancelled and killed", proc.pid)
            raise

        if proc.returncode != 0:
            diagnostic = stderr.decode("utf-8", errors="ignore")[-STDERR_LOG_LIMIT:]
            logger.error(
                "background removal failed (returncode=%s): %s", proc.returncode, diagnostic.strip()
            )
            raise errors.BackgroundRemovalFailed()

        if not output_path.is_file() or output_path.stat().st_size == 0:
            logger.error("background removal: tool exited 0 but wrote no output at %s", output_path)
            raise errors.BackgroundRemovalFailed()
        return output_path


async def _terminate(proc: asyncio.subprocess.Process) -> None:
    """Kill the child if it is still running and wait so it is not left a zombie."""
    if proc.returncode is None:
        try:
            proc.kill()
        except ProcessLookupError:
            pass
    await proc.wait()
