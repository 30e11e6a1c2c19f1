"""
JobSync host entry point (native messaging protocol).

Each message on stdin/stdout is a 4-byte native-endian length followed by
UTF-8 JSON. Requests are dispatched to JobSyncService concurrently so that a
`cancelSync` can arrive while a `sync` is running. Pipeline events are
forwarded as `{"type": "event", "event": name, "payload": ...}`.
"""

import asyncio
import json
import struct
import sys
import threading
from typing import Any, Dict, Optional

from .core.events import EventBus
from .service import JobSyncService
from .utils.config import load_config
from .utils.logger import logger, set_level

_stdout_lock = threading.Lock()


def get_message() -> Optional[Dict]:
    """
    Read one message from stdin. Returns None once stdin is closed.
    """
    raw_length = sys.stdin.buffer.read(4)
    if len(raw_length) < 4:
        return None
    message_length = struct.unpack("@I", raw_length)[0]
    message = sys.stdin.buffer.read(message_length).decode("utf-8")
    return json.loads(message)


def send_message(message_content: Dict[str, Any]) -> None:
    encoded_content = json.dumps(message_content, default=str).encode("utf-8")
    encoded_length = struct.pack("@I", len(encoded_content))
    with _stdout_lock:
        sys.stdout.buffer.write(encoded_length)
        sys.stdout.buffer.write(encoded_content)
        sys.stdout.buffer.flush()


def forward_event(event: str, payload: Dict[str, Any]) -> None:
    send_message({"type": "event", "event": event, "payload": payload})


async def _dispatch(service: JobSyncService, message: Dict) -> None:
    try:
        send_message(await service.handle_message(message))
    except Exception as e:
        logger.error(f"Critical error handling {message.get('type')}: {e}", exc_info=True)
        reply = {"status": "error", "error": str(e), "code": "internal"}
        if "id" in message:
            reply["id"] = message["id"]
        send_message(reply)


async def serve(service: JobSyncService) -> None:
    pending = set()
    while True:
        try:
            message = await asyncio.to_thread(get_message)
        except (ValueError, UnicodeDecodeError) as e:
            logger.error(f"Malformed message on stdin: {e}")
            send_message({"status": "error", "error": f"Malformed message: {e}", "code": "invalid_request"})
            continue

        if message is None:
            logger.info("Stdin closed, exiting.")
            break

        logger.info(f"Received message type: {message.get('type')}")
        task = asyncio.create_task(_dispatch(service, message))
        pending.add(task)
        task.add_done_callback(pending.discard)

    if pending:
        service.cancel_sync()
        await asyncio.gather(*pending)


def main() -> None:
    config = load_config()
    set_level(config.get("log_level", "INFO"))
    logger.info("JobSync host started")

    events = EventBus()
    events.subscribe_all(forward_event)
    service = JobSyncService(config, events=events)
    try:
        asyncio.run(serve(service))
    finally:
        service.close()


if __name__ == "__main__":
    main()
