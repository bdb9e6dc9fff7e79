"""
The interface loop: one cooperative task that owns the screen.

It waits for the next key or scheduler notification (both arrive on the same
queue), applies it to the controller, and redraws once the queue is drained.
"""
import asyncio
import logging
from typing import Optional

from rich.console import Console
from rich.live import Live

from core.events import Event, KeyPressed
from services.scheduler import Scheduler
from tui.controller import Controller
from tui.keys import KeyReader
from tui.render import render_frame

logger = logging.getLogger(__name__)

# how often the terminal size is re-checked while idle
IDLE_POLL_SECONDS = 0.5


async def run_interface(
    controller: Controller,
    scheduler: Scheduler,
    events: "asyncio.Queue[Event]",
    console: Optional[Console] = None,
) -> None:
    console = console or Console()
    loop = asyncio.get_running_loop()

    def on_key(key: str) -> None:
        loop.call_soon_threadsafe(events.put_nowait, KeyPressed(key))

    reader = KeyReader(on_key)
    reader.start()
    scheduler.start()
    logger.info("Interface started")

    try:
        controller.resize(console.size.width, console.size.height)
        await controller.sync()
        with Live(
            render_frame(controller.frame()),
            console=console,
            screen=True,
            auto_refresh=False,
            vertical_overflow="crop",
        ) as live:
            controller.dirty = False
            while not controller.should_quit:
                try:
                    event = await asyncio.wait_for(events.get(), timeout=IDLE_POLL_SECONDS)
                except asyncio.TimeoutError:
                    event = None

                if event is not None:
                    await controller.handle(event)
                    # a burst of notifications costs one redraw
                    while not events.empty() and not controller.should_quit:
                        await controller.handle(events.get_nowait())

                if controller.should_quit:
                    break

                controller.resize(console.size.width, console.size.height)
                if controller.dirty:
                    await controller.sync()
                    live.update(render_frame(controller.frame()), refresh=True)
                    controller.dirty = False
    finally:
        reader.stop()
        await scheduler.shutdown()
        logger.info("Interface stopped")
