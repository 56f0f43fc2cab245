"""
Chat bridge entry point.

Run with:
    python -m chorus.remote --token=<BOT_TOKEN> [--user-id=<ID>] [--project=<PATH>]

Stdout carries IPC events for the supervising process; logs go to stderr.
"""

import asyncio
import logging
import signal
import sys
from typing import List, Optional

from .bot import RemoteBridge
from .config import BridgeConfig
from .ipc import Error, IpcWriter, Stopped
from .telegram import TelegramClient

logger = logging.getLogger("chorus.remote")


async def serve(config: BridgeConfig, ipc: IpcWriter) -> None:
    telegram = TelegramClient(config.token)
    bridge = RemoteBridge(config, telegram, ipc=ipc)
    task = asyncio.current_task()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, task.cancel)
    try:
        await bridge.run()
    except asyncio.CancelledError:
        logger.info("Shutting down")
    finally:
        await telegram.close()


def main(argv: Optional[List[str]] = None) -> int:
    logging.basicConfig(
        stream=sys.stderr,
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    config = BridgeConfig.from_args(argv)
    ipc = IpcWriter(sys.stdout)
    try:
        asyncio.run(serve(config, ipc))
    except Exception as e:
        logger.error(f"Bridge failed: {e}")
        ipc.emit(Error(message=str(e)))
        return 1
    finally:
        ipc.emit(Stopped())
    return 0


if __name__ == "__main__":
    sys.exit(main())
