"""
Console voice client.

Run with:
    voicelink-client

Commands (one per line):
    <Enter>     tap the microphone (connect / pause / resume)
    h           hold
    p <text>    apply new instructions to the live session
    v <0..1>    set output volume
    q           end the call and quit
"""

import asyncio
import logging
import sys

from dotenv import load_dotenv

from .client import VoiceClient
from .config import ClientConfig

logger = logging.getLogger(__name__)

# Mic taps still in flight
_background_tasks = set()


def print_update(field: str, value: str):
    if field == "status":
        print(f"[status] {value}", file=sys.stderr)
    elif field == "transcript":
        print(value, file=sys.stderr)


def _finish_background_task(task: asyncio.Task):
    _background_tasks.discard(task)
    if not task.cancelled() and task.exception() is not None:
        logger.error(f"Mic tap failed: {task.exception()}")


async def handle_command(client: VoiceClient, line: str) -> bool:
    """Apply one console command. Returns False when the user quits."""
    command = line.strip()
    if command == "":
        task = asyncio.ensure_future(client.tap_mic())
        _background_tasks.add(task)
        task.add_done_callback(_finish_background_task)
    elif command == "h":
        client.hold()
    elif command.startswith("p "):
        client.apply_instructions(command[2:])
    elif command.startswith("v "):
        try:
            client.set_volume(float(command[2:]))
        except ValueError:
            print("Volume must be a number between 0 and 1", file=sys.stderr)
    elif command == "q":
        return False
    else:
        print(__doc__, file=sys.stderr)
    return True


async def run_console(config: ClientConfig):
    client = VoiceClient(config)
    client.state.add_listener(print_update)
    print(f"[status] {client.state.status} - press Enter to talk, q to quit", file=sys.stderr)

    loop = asyncio.get_event_loop()
    try:
        while True:
            line = await loop.run_in_executor(None, sys.stdin.readline)
            if not line:
                break
            if not await handle_command(client, line):
                break
    finally:
        await client.end()


def main():
    load_dotenv()
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    try:
        asyncio.run(run_console(ClientConfig.from_env()))
    except KeyboardInterrupt:
        print("\nStopping...", file=sys.stderr)


if __name__ == "__main__":
    main()
