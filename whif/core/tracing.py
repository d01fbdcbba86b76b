"""Optional per-attempt tracing.

The invocation layer emits a ``start`` event before each attempt and an
``end`` or ``error`` event after it. A sink is optional; a failing sink is
logged and otherwise ignored.
"""

import asyncio
import itertools
import json
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Literal, Protocol

logger = logging.getLogger(__name__)

TraceEventKind = Literal["start", "end", "error"]


@dataclass
class TraceEvent:
    kind: TraceEventKind
    model: str
    attempt: int
    analysis_id: str = ""
    user_id: str = ""
    name: str = ""
    elapsed_ms: float | None = None
    error: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=lambda: datetime.now().isoformat())


class TraceSink(Protocol):
    def on_event(self, event: TraceEvent) -> None: ...


def emit(sink: TraceSink | None, event: TraceEvent) -> None:
    """Deliver an event to ``sink`` if there is one. Never raises."""
    if sink is None:
        return
    try:
        sink.on_event(event)
    except Exception as exc:
        logger.warning(f"[trace] Sink failed on {event.kind} event: {exc}")


# =============================================================================
# JSON file sink
# =============================================================================

_SECRET_KEY_MARKERS = ("api_key", "authorization", "token", "secret", "password")
_TOKEN_COUNT_KEYS = {
    "prompt_tokens",
    "completion_tokens",
    "total_tokens",
    "input_tokens",
    "output_tokens",
}
_TEXT_KEY_MARKERS = (
    "prompt",
    "content",
    "proposal",
    "statement",
    "impact",
    "finding",
    "summary",
    "text",
)


def sanitize_for_logs(value: Any, key_hint: str = "") -> Any:
    """Recursively redact secrets and free text before persisting traces."""
    key = key_hint.lower()
    if key in _TOKEN_COUNT_KEYS:
        return value
    if any(marker in key for marker in _SECRET_KEY_MARKERS):
        return "[REDACTED_SECRET]"

    if isinstance(value, dict):
        return {str(k): sanitize_for_logs(v, key_hint=str(k)) for k, v in value.items()}

    if isinstance(value, (list, tuple)):
        return [sanitize_for_logs(item, key_hint=key_hint) for item in value]

    if isinstance(value, str):
        if any(marker in key for marker in _TEXT_KEY_MARKERS):
            return f"[REDACTED_TEXT length={len(value)}]"
        if len(value) > 200:
            return value[:200] + "...[truncated]"
        return value

    return value


class JsonFileTraceSink:
    """Writes one sanitized JSON document per event into ``log_dir``.

    File names carry a per-sink sequence number and the attempt, so events
    landing in the same microsecond never overwrite each other. Inside an
    event loop the write runs in a worker thread; ``drain`` waits for it.
    """

    def __init__(self, log_dir: Path | str = "./logs") -> None:
        self.log_dir = Path(log_dir)
        self.log_dir.mkdir(parents=True, exist_ok=True)
        self._seq = itertools.count()
        self._pending: set[asyncio.Task] = set()

    def on_event(self, event: TraceEvent) -> None:
        stamp = datetime.now().strftime("%Y%m%d_%H%M%S_%f")
        name = event.name or "call"
        log_file = (
            self.log_dir
            / f"{stamp}_{next(self._seq):06d}_{name}_a{event.attempt}_{event.kind}.json"
        )
        payload = sanitize_for_logs(asdict(event))
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._write(log_file, payload)
            return
        task = loop.create_task(asyncio.to_thread(self._write_logged, log_file, payload))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    @staticmethod
    def _write(log_file: Path, payload: dict) -> None:
        with open(log_file, "w", encoding="utf-8") as f:
            json.dump(payload, f, indent=2, default=str)

    def _write_logged(self, log_file: Path, payload: dict) -> None:
        try:
            self._write(log_file, payload)
        except OSError as exc:
            logger.warning(f"[trace] Failed to write {log_file.name}: {exc}")

    async def drain(self) -> None:
        """Wait for outstanding trace writes. Never raises."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
