"""Run an external OCR command line against an image file."""

from __future__ import annotations

import asyncio
import logging
import shlex
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from .cache import now_ms

logger = logging.getLogger(__name__)

DEFAULT_COMMAND = "tesseract {path} stdout"

Recognizer = Callable[[str], Awaitable[str]]


class RecognitionError(RuntimeError):
    """Raised when the recognition command cannot produce text."""

    def __init__(self, message: str, stderr: str | None = None) -> None:
        super().__init__(message)
        self.stderr = stderr


@dataclass(frozen=True, slots=True)
class RecognitionDebugResult:
    text: str
    timestamp: int
    error: str | None = None
    stderr: str | None = None


def build_argv(template: str, path: str) -> list[str]:
    """Split *template* shell-style and substitute ``{path}`` in every argument."""

    argv = [part.replace("{path}", path) for part in shlex.split(template)]
    if not argv:
        raise ValueError("Recognition command is empty")
    if "{path}" not in template:
        argv.append(path)
    return argv


async def run_command(argv: list[str]) -> tuple[str, str]:
    """Run *argv*, returning ``(stdout, stderr)``; non-zero exit raises."""

    try:
        process = await asyncio.create_subprocess_exec(
            *argv,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as exc:
        raise RecognitionError(f"Cannot start {argv[0]}: {exc}") from exc

    try:
        stdout, stderr = await process.communicate()
    except asyncio.CancelledError:
        if process.returncode is None:
            process.kill()
            await asyncio.shield(process.wait())
        raise

    out = stdout.decode("utf-8", errors="replace")
    err = stderr.decode("utf-8", errors="replace")
    if process.returncode != 0:
        raise RecognitionError(
            f"{argv[0]} exited with status {process.returncode}", stderr=err or None
        )
    return out.strip(), err


@dataclass(slots=True)
class CommandRecognizer:
    """Callable recognizer: ``await recognizer(path) -> text``.

    The fallback command, when configured, is tried once if the main
    command fails.
    """

    command: str = DEFAULT_COMMAND
    fallback_command: str | None = None

    async def __call__(self, path: str) -> str:
        try:
            text, stderr = await run_command(build_argv(self.command, path))
        except RecognitionError as exc:
            if not self.fallback_command:
                raise
            logger.warning("Recognition failed for %s (%s), trying fallback", path, exc)
            text, stderr = await run_command(build_argv(self.fallback_command, path))
        if stderr.strip():
            logger.debug("Recognition stderr for %s: %s", path, stderr.strip())
        return text

    async def debug(self, path: str) -> RecognitionDebugResult:
        """Recognize *path* and report stderr and errors instead of raising."""

        commands = [self.command]
        if self.fallback_command:
            commands.append(self.fallback_command)

        error: RecognitionError | None = None
        for command in commands:
            try:
                text, stderr = await run_command(build_argv(command, path))
            except RecognitionError as exc:
                error = exc
                continue
            return RecognitionDebugResult(text=text, timestamp=now_ms(), stderr=stderr or None)

        return RecognitionDebugResult(
            text="",
            timestamp=now_ms(),
            error=str(error) if error else "No recognition command configured",
            stderr=error.stderr if error else None,
        )
