"""HTTP-facing side of webhook intake.

The processor retries anything not acknowledged with a 2xx within three
seconds. The gateway therefore:

1. commits the raw delivery to the inbox (503 if that fails - the only
   case where the processor is asked to retry),
2. starts processing and waits for it at most `ack_timeout` seconds,
3. acknowledges. Processing that is still running carries on in the
   background and is never cancelled.
"""

import asyncio
import logging

from billing_sync.billing.processor import WebhookProcessor
from billing_sync.core.exceptions import ServiceUnavailableError

logger = logging.getLogger(__name__)

# Strong references to processing tasks still running after their ack
inflight_tasks: set[asyncio.Task] = set()


class WebhookGateway:
    def __init__(
        self,
        processor: WebhookProcessor,
        ack_timeout: float,
        tasks: set[asyncio.Task] | None = None,
    ):
        self.processor = processor
        self.ack_timeout = ack_timeout
        self._tasks = inflight_tasks if tasks is None else tasks

    async def receive(self, raw_body: bytes, signature_header: str | None) -> dict[str, bool]:
        """Capture, process within the deadline, acknowledge."""
        try:
            # Shielded: a client disconnect must not abort a half-written capture
            inbox_id = await asyncio.shield(self.processor.capture(raw_body, signature_header))
        except Exception as e:
            logger.exception(f"[webhook] Could not capture delivery ({len(raw_body)} bytes)")
            raise ServiceUnavailableError("Webhook could not be stored; retry later") from e

        task = asyncio.create_task(
            self.processor.process_inbox(inbox_id), name=f"webhook-{inbox_id}"
        )
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

        done, _ = await asyncio.wait({task}, timeout=self.ack_timeout)
        if not done:
            logger.warning(
                f"[webhook] Inbox row {inbox_id} still processing after {self.ack_timeout}s; "
                f"acknowledging and continuing in background"
            )
        return {"received": True}

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            logger.warning(f"[webhook] Task {task.get_name()} was cancelled")
            return
        error = task.exception()
        if error is not None:
            logger.error(f"[webhook] Task {task.get_name()} failed: {error!r}")


async def drain_inflight(timeout: float | None = None) -> int:
    """Wait for background processing to finish (shutdown). Returns tasks left running."""
    if not inflight_tasks:
        return 0
    _, pending = await asyncio.wait(set(inflight_tasks), timeout=timeout)
    return len(pending)
