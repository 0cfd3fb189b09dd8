"""
WhatsApp Worker Service

Consumes inbox events from Redis Streams and processes them.

Features:
- XREADGROUP consumer for horizontal scaling
- PEL reclaim for stuck messages, fed back into the main loop
- Idempotent inbound handling (whatsapp_message_id)
- Retries with a dead letter stream after MAX_RETRIES deliveries
- Graceful shutdown on SIGTERM/SIGINT
"""

import asyncio
import logging
import os
import queue
import signal
import socket
import threading
import time

from inbox.contracts.envelope import InboxEnvelope
from inbox.providers import WhatsAppProvider, get_provider
from inbox.service.inbound_handler import InboundHandler
from inbox.service.outbound_handler import MAX_RETRIES, OutboundHandler
from inbox.streams.consumer import InboxStreamConsumer
from inbox.streams.groups import INBOUND_STREAM, OUTBOUND_STREAM, ensure_streams
from inbox.streams.producer import InboxStreamProducer
from inboxcore.db import get_sessionmaker
from inboxcore.logging import setup_logging
from inboxcore.redis import close_redis, get_redis_client

logger = logging.getLogger(__name__)

# Configuration
CONSUMER_NAME = os.getenv("INBOX_CONSUMER_NAME", f"inbox-worker-{socket.gethostname()}-{os.getpid()}")
BATCH_SIZE = int(os.getenv("INBOX_BATCH_SIZE", "10"))
BLOCK_MS = int(os.getenv("INBOX_BLOCK_MS", "5000"))
RECLAIM_INTERVAL_SEC = int(os.getenv("INBOX_RECLAIM_INTERVAL", "60"))
RECLAIM_IDLE_MS = int(os.getenv("INBOX_RECLAIM_IDLE_MS", "60000"))

# Graceful shutdown
shutdown_requested = threading.Event()

# Entries claimed by the reclaim thread, processed by the main loop
reclaimed: "queue.Queue[tuple[str, str, InboxEnvelope]]" = queue.Queue()


def signal_handler(signum, frame):
    logger.info(f"Received signal {signum}, requesting shutdown...")
    shutdown_requested.set()


def dead_letter(
    consumer: InboxStreamConsumer,
    producer: InboxStreamProducer,
    stream_name: str,
    msg_id: str,
    envelope: InboxEnvelope,
    error: str,
) -> None:
    producer.publish_to_dlq(envelope, error, envelope.retry_count + 1)
    consumer.ack(stream_name, msg_id)


def process_inbound(
    db,
    consumer: InboxStreamConsumer,
    producer: InboxStreamProducer,
    msg_id: str,
    envelope: InboxEnvelope,
) -> bool:
    """Handle one inbound entry. Returns True if it was acknowledged."""
    try:
        result = InboundHandler(db, producer).handle_envelope(envelope)
    except Exception as e:
        db.rollback()
        logger.error(f"Failed to process inbound message {msg_id}: {e}", exc_info=True)
        if envelope.retry_count + 1 >= MAX_RETRIES:
            dead_letter(consumer, producer, INBOUND_STREAM, msg_id, envelope, str(e))
            return True
        # Left pending for reclaim
        return False

    consumer.ack(INBOUND_STREAM, msg_id)
    logger.debug("Processed inbound message", extra={"msg_id": msg_id, "result": result})
    return True


async def process_outbound(
    db,
    consumer: InboxStreamConsumer,
    producer: InboxStreamProducer,
    provider: WhatsAppProvider,
    msg_id: str,
    envelope: InboxEnvelope,
) -> bool:
    """Handle one outbound entry. Returns True if it was acknowledged."""
    try:
        result = await OutboundHandler(db, producer, provider).handle_envelope(envelope)
    except Exception as e:
        db.rollback()
        logger.error(f"Failed to process outbound message {msg_id}: {e}", exc_info=True)
        if envelope.retry_count + 1 >= MAX_RETRIES:
            dead_letter(consumer, producer, OUTBOUND_STREAM, msg_id, envelope, str(e))
            return True
        return False

    logger.debug("Processed outbound message", extra={"msg_id": msg_id, "result": result})
    if result.get("will_retry"):
        return False

    consumer.ack(OUTBOUND_STREAM, msg_id)
    return True


async def process_batch(
    entries: list[tuple[str, str, InboxEnvelope]],
    consumer: InboxStreamConsumer,
    producer: InboxStreamProducer,
    provider: WhatsAppProvider,
) -> int:
    """Process (stream, msg_id, envelope) entries with one database session."""
    if not entries:
        return 0

    processed = 0
    db = get_sessionmaker()()
    try:
        for stream_name, msg_id, envelope in entries:
            if stream_name == OUTBOUND_STREAM:
                acked = await process_outbound(db, consumer, producer, provider, msg_id, envelope)
            else:
                acked = process_inbound(db, consumer, producer, msg_id, envelope)
            processed += int(acked)
    finally:
        db.close()

    return processed


def drain_reclaimed(limit: int) -> list[tuple[str, str, InboxEnvelope]]:
    entries = []
    while len(entries) < limit:
        try:
            entries.append(reclaimed.get_nowait())
        except queue.Empty:
            break
    return entries


def run_reclaim_loop(redis_client) -> None:
    """Background thread claiming idle pending entries for the main loop."""
    logger.info(
        f"Starting PEL reclaim loop (interval={RECLAIM_INTERVAL_SEC}s, idle_threshold={RECLAIM_IDLE_MS}ms)"
    )
    consumer = InboxStreamConsumer(redis_client, CONSUMER_NAME)

    while not shutdown_requested.wait(RECLAIM_INTERVAL_SEC):
        for stream_name in (INBOUND_STREAM, OUTBOUND_STREAM):
            try:
                for msg_id, envelope in consumer.reclaim_pending(stream_name, min_idle_ms=RECLAIM_IDLE_MS, count=100):
                    reclaimed.put((stream_name, msg_id, envelope))
            except Exception as e:
                logger.error(f"Error reclaiming from {stream_name}: {e}", exc_info=True)


async def main_loop() -> None:
    redis_client = get_redis_client()
    ensure_streams(redis_client)

    consumer = InboxStreamConsumer(redis_client, CONSUMER_NAME)
    producer = InboxStreamProducer(redis_client)
    provider = get_provider()

    logger.info(f"Starting inbox worker (consumer={CONSUMER_NAME}, batch={BATCH_SIZE})")

    reclaim_thread = threading.Thread(target=run_reclaim_loop, args=(redis_client,), daemon=True)
    reclaim_thread.start()

    try:
        while not shutdown_requested.is_set():
            try:
                entries = drain_reclaimed(BATCH_SIZE)
                entries += consumer.read_messages(
                    [INBOUND_STREAM, OUTBOUND_STREAM],
                    count=BATCH_SIZE,
                    block_ms=100 if entries else BLOCK_MS,
                )
                processed = await process_batch(entries, consumer, producer, provider)
                if processed:
                    logger.info(f"Processed {processed} stream entries")
            except Exception as e:
                logger.error(f"Error in main loop: {e}", exc_info=True)
                time.sleep(1)
    finally:
        close = getattr(provider, "close", None)
        if close is not None:
            await close()
        close_redis()

    logger.info("Inbox worker shutting down gracefully")


def main() -> None:
    """Entry point."""
    setup_logging()
    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)
    logger.info("Inbox worker starting...")
    asyncio.run(main_loop())


if __name__ == "__main__":
    main()
