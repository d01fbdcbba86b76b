"""Usage metering hook.

One UsageMeter per analysis run. The invocation layer reports every call
attempt to it; the meter prices the attempt, keeps a running total for
the end-of-run debit and hands an immutable UsageRecord to the usage
repository.

Persistence is fire-and-forget: writes run in a worker thread and their
failures are logged, never raised into the model call.
"""

import asyncio
import logging
import threading
from decimal import Decimal

from ..errors import UsageRecordingError
from ..providers.base import TokenUsage
from ...storage.repositories import UsageRepository
from ...storage.schemas import UsageRecord
from .pricing import calculate_cost

logger = logging.getLogger(__name__)


class UsageMeter:
    """Per-run usage recorder and cost accumulator.

    Args:
        repository: Destination for usage records (may be None to keep
            records in memory only).
        analysis_id: Analysis the recorded calls belong to.
        user_id: User billed for the calls.
    """

    def __init__(
        self,
        repository: UsageRepository | None,
        *,
        analysis_id: str,
        user_id: str,
    ) -> None:
        self.repository = repository
        self.analysis_id = analysis_id
        self.user_id = user_id
        self._records: list[UsageRecord] = []
        self._total_cost = Decimal(0)
        self._lock = threading.Lock()
        self._pending: set[asyncio.Task] = set()

    @property
    def total_cost(self) -> Decimal:
        with self._lock:
            return self._total_cost

    @property
    def records(self) -> list[UsageRecord]:
        with self._lock:
            return list(self._records)

    def record_success(self, model: str, usage: TokenUsage | None) -> UsageRecord | None:
        """Record a successful attempt. Without usage metadata nothing is billed."""
        if usage is None:
            logger.warning(
                f"[usage] No usage metadata from {model} "
                f"(analysis={self.analysis_id}); call not metered"
            )
            return None

        input_tokens = max(0, usage.input_tokens)
        output_tokens = max(0, usage.output_tokens)
        record = UsageRecord(
            analysis_id=self.analysis_id,
            user_id=self.user_id,
            model_name=model,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            cost=calculate_cost(input_tokens, output_tokens, model),
            success=True,
        )
        self._add(record)
        return record

    def record_failure(
        self, model: str, error: BaseException, usage: TokenUsage | None = None
    ) -> UsageRecord:
        """Record a failed attempt. Failed attempts are never billed."""
        record = UsageRecord(
            analysis_id=self.analysis_id,
            user_id=self.user_id,
            model_name=model,
            input_tokens=max(0, usage.input_tokens) if usage else 0,
            output_tokens=max(0, usage.output_tokens) if usage else 0,
            cost=Decimal(0),
            success=False,
            error_message=str(error) or type(error).__name__,
        )
        self._add(record)
        return record

    def _add(self, record: UsageRecord) -> None:
        with self._lock:
            self._records.append(record)
            self._total_cost += record.cost
        self._persist(record)

    def _write(self, record: UsageRecord) -> None:
        try:
            self.repository.create(record)
        except Exception as exc:
            err = UsageRecordingError(
                f"Failed to persist usage record for {record.model_name} "
                f"(analysis={record.analysis_id}): {exc}"
            )
            logger.error(f"[usage] {err}")

    def _persist(self, record: UsageRecord) -> None:
        if self.repository is None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._write(record)
            return
        task = loop.create_task(asyncio.to_thread(self._write, record))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def drain(self) -> None:
        """Wait for outstanding usage writes. Never raises."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
