"""
Async subprocess utilities

Every external process the snapshot lifecycle shells out to (deploy-app,
capture hooks, git, desktop notifications) goes through these helpers so the
event loop is never blocked and cancellation kills the child process.
"""
import asyncio
import logging
import os
from typing import Callable, Dict, List, Optional
from dataclasses import dataclass

from ..errors import CommandError

logger = logging.getLogger(__name__)


@dataclass
class SubprocessResult:
    """Result from subprocess execution (mirrors subprocess.CompletedProcess)"""
    returncode: int
    stdout: str
    stderr: str
    args: List[str]

    @property
    def success(self) -> bool:
        return self.returncode == 0


def _merge_env(extra_env: Optional[Dict[str, str]]) -> Optional[Dict[str, str]]:
    if not extra_env:
        return None
    env = dict(os.environ)
    env.update(extra_env)
    return env


async def run_async(
    cmd: List[str],
    timeout: Optional[float] = None,
    cwd: Optional[str] = None,
    extra_env: Optional[Dict[str, str]] = None,
    check: bool = False
) -> SubprocessResult:
    """
    Async replacement for subprocess.run()

    Args:
        cmd: Command and arguments as list
        timeout: Optional timeout in seconds
        cwd: Working directory
        extra_env: Variables added on top of the current environment
        check: Raise CommandError on non-zero exit code

    Returns:
        SubprocessResult with returncode, stdout, stderr

    Raises:
        asyncio.TimeoutError: If timeout is exceeded
        CommandError: If the command cannot be started, or check=True and it failed
    """
    try:
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=cwd,
            env=_merge_env(extra_env)
        )
    except OSError as e:
        raise CommandError(f"failed to start {cmd[0]}: {e}") from e

    try:
        stdout_bytes, stderr_bytes = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except (asyncio.TimeoutError, asyncio.CancelledError):
        process.kill()
        await process.wait()
        raise

    result = SubprocessResult(
        returncode=process.returncode,
        stdout=stdout_bytes.decode('utf-8', errors='replace') if stdout_bytes else "",
        stderr=stderr_bytes.decode('utf-8', errors='replace') if stderr_bytes else "",
        args=cmd
    )

    if check and not result.success:
        raise CommandError(
            f"Command {' '.join(cmd)} failed with exit code {result.returncode}: {result.stderr.strip()}",
            returncode=result.returncode,
            stderr=result.stderr
        )

    return result


async def run_async_stream(
    cmd: List[str],
    cwd: Optional[str] = None,
    extra_env: Optional[Dict[str, str]] = None,
    line_callback: Optional[Callable[[str], None]] = None,
    check: bool = True
) -> SubprocessResult:
    """
    Run subprocess with real-time output streaming

    Each stdout/stderr line is handed to line_callback (defaults to the
    module logger) as soon as it is produced. Long-running deploys stay
    visible this way.
    """
    try:
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=cwd,
            env=_merge_env(extra_env)
        )
    except OSError as e:
        raise CommandError(f"failed to start {cmd[0]}: {e}") from e

    callback = line_callback or (lambda line: logger.info(f"[{os.path.basename(cmd[0])}] {line}"))
    stdout_lines: List[str] = []
    stderr_lines: List[str] = []

    async def read_stream(stream, lines_list):
        while True:
            line = await stream.readline()
            if not line:
                break
            line_text = line.decode('utf-8', errors='replace').rstrip()
            lines_list.append(line_text)
            callback(line_text)

    try:
        await asyncio.gather(
            read_stream(process.stdout, stdout_lines),
            read_stream(process.stderr, stderr_lines),
            process.wait()
        )
    except asyncio.CancelledError:
        process.kill()
        await process.wait()
        raise

    result = SubprocessResult(
        returncode=process.returncode,
        stdout='\n'.join(stdout_lines),
        stderr='\n'.join(stderr_lines),
        args=cmd
    )

    if check and not result.success:
        raise CommandError(
            f"Command {' '.join(cmd)} failed with exit code {result.returncode}",
            returncode=result.returncode,
            stderr=result.stderr
        )

    return result
