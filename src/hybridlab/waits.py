"""Fixed-duration waits rendered as progress bars."""

import logging
import os
import sys
import time
from typing import Callable, Optional, TypeVar

from rich.console import Console
from rich.progress import BarColumn, Progress, TextColumn, TimeRemainingColumn

logger = logging.getLogger(__name__)

console = Console()

T = TypeVar("T")


def _key_pressed() -> bool:
    """Non-blocking check for a key press on an interactive terminal."""
    if not sys.stdin or not sys.stdin.isatty():
        return False
    if os.name == "nt":
        import msvcrt

        if msvcrt.kbhit():
            msvcrt.getwch()
            return True
        return False

    import select

    ready, _, _ = select.select([sys.stdin], [], [], 0)
    if ready:
        sys.stdin.readline()
        return True
    return False


def wait(seconds: int, description: str, allow_skip: bool = False, tick: float = 1.0) -> bool:
    """Sleep for a fixed duration while showing a progress bar.

    Args:
        seconds: Total wait in seconds
        description: Text shown next to the bar
        allow_skip: Let a key press end the wait early
        tick: Progress refresh interval in seconds

    Returns:
        True if the wait was cut short by a key press
    """
    if seconds <= 0:
        return False

    if allow_skip:
        description = f"{description} (press Enter to skip)"

    logger.debug(f"Waiting {seconds}s: {description}")
    with Progress(
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        TimeRemainingColumn(),
        console=console,
        transient=True,
    ) as progress:
        task = progress.add_task(description, total=seconds)
        elapsed = 0.0
        while elapsed < seconds:
            if allow_skip and _key_pressed():
                console.print(f"⏭️  Skipped wait: {description}")
                return True
            step = min(tick, seconds - elapsed)
            time.sleep(step)
            elapsed += step
            progress.update(task, completed=elapsed)
    return False


def poll(
    check: Callable[[], T],
    timeout: int,
    interval: int,
    description: str,
) -> Optional[T]:
    """Call check() every interval seconds until it is truthy or timeout elapses.

    Returns:
        The first truthy result, or the last result after the timeout
    """
    deadline = time.time() + timeout
    attempt = 0
    result: Optional[T] = None
    with console.status(description):
        while True:
            attempt += 1
            result = check()
            if result:
                logger.info(f"{description}: ready after {attempt} attempt(s)")
                return result
            if time.time() + interval > deadline:
                break
            time.sleep(interval)
    logger.warning(f"{description}: not ready after {timeout}s ({attempt} attempts)")
    return result
