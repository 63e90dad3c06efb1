"""
Platform helpers.
"""

import asyncio
import logging
import os
import sys
from typing import List, Tuple

logger = logging.getLogger("localcan.platform")

IS_WINDOWS = sys.platform == "win32"
IS_MACOS = sys.platform == "darwin"


def is_admin() -> bool:
    """Check whether the current process runs with administrator/root rights."""
    if IS_WINDOWS:
        try:
            import ctypes
            return bool(ctypes.windll.shell32.IsUserAnAdmin())
        except (AttributeError, OSError):
            return False
    return os.geteuid() == 0


async def run_command(cmd: List[str], timeout: float = 60) -> Tuple[int, str, str]:
    """
    Run a command without blocking the event loop.

    Returns (returncode, stdout, stderr). Raises FileNotFoundError if the
    binary is missing and asyncio.TimeoutError if it does not finish.
    """
    process = await asyncio.create_subprocess_exec(
        *cmd,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        stdout, stderr = await asyncio.wait_for(
            process.communicate(), timeout=timeout
        )
    except asyncio.TimeoutError:
        process.kill()
        await process.wait()
        raise
    logger.debug(f"{cmd[0]} exited with {process.returncode}")
    return (
        process.returncode,
        stdout.decode(errors="replace").strip(),
        stderr.decode(errors="replace").strip(),
    )
