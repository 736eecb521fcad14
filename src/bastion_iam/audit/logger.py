"""Append-only, hash-chained JSONL audit log with daily files.

Storage layout::

    ~/.bastion-iam/audit/2026-10-17.jsonl
    ~/.bastion-iam/audit/2026-10-18.jsonl

Each line is one :class:`AuditEvent`. ``hash`` is the SHA-256 of the
canonical JSON of the event (everything except ``hash``), and ``prev_hash``
is the ``hash`` of the event written before it, so editing or deleting any
line breaks the chain from that point on.

``record`` never raises: writes are retried with back-off and a final
failure is reported on the operational log as ``AuditWriteFailed``. With
``background=True`` events are written by a single writer thread so callers
never wait on disk; :meth:`AuditLogger.flush` waits for the queue to drain.
"""

from __future__ import annotations

import csv
import hashlib
import json
import logging
import os
import queue
import threading
from datetime import date, datetime
from pathlib import Path

from pydantic import ValidationError
from tenacity import (
    RetryError,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from bastion_iam.audit.models import (
    GENESIS_HASH,
    AuditEvent,
    AuditPage,
    AuditQuery,
    ChainVerification,
)
from bastion_iam.errors import AuditWriteFailed, ConfigurationError
from bastion_iam.store import Clock, utcnow

logger = logging.getLogger(__name__)

_STOP = object()


def compute_hash(event: AuditEvent) -> str:
    body = event.model_dump(mode="json", exclude={"hash"})
    canonical = json.dumps(body, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class AuditLogger:
    """Tamper-evident audit trail.

    Args:
        audit_dir: Directory for the daily JSONL files.
        background: Write from a background thread instead of the caller's.
        fsync: ``os.fsync`` after every appended line.
        default_page_size: Page size when a query does not set ``limit``.
        max_page_size: Upper bound for ``limit``.
        clock: Source of event timestamps.
    """

    # Retry policy: 3 attempts, exponential back-off 0.05s -> 0.5s
    _RETRY_ATTEMPTS = 3
    _RETRY_WAIT_MIN = 0.05   # seconds
    _RETRY_WAIT_MAX = 0.5    # seconds

    def __init__(
        self,
        audit_dir: str | Path | None = None,
        *,
        background: bool = False,
        fsync: bool = True,
        default_page_size: int = 100,
        max_page_size: int = 1000,
        clock: Clock | None = None,
    ) -> None:
        if audit_dir is None:
            audit_dir = Path.home() / ".bastion-iam" / "audit"
        self._dir = Path(audit_dir).expanduser()
        self._dir.mkdir(parents=True, exist_ok=True)
        self._fsync = fsync
        self._default_page = default_page_size
        self._max_page = max_page_size
        self._clock = clock or utcnow

        # _stamp_lock orders sequence/timestamp; _write_lock orders the chain
        self._stamp_lock = threading.Lock()
        self._write_lock = threading.Lock()
        self._last_sequence, self._last_hash, self._last_ts = self._recover_tail()

        self._queue: queue.Queue | None = None
        self._worker: threading.Thread | None = None
        if background:
            self._queue = queue.Queue()
            self._worker = threading.Thread(
                target=self._drain, args=(self._queue,), name="bastion-iam-audit", daemon=True
            )
            self._worker.start()

    @property
    def directory(self) -> Path:
        return self._dir

    def _file_for_date(self, d: date) -> Path:
        return self._dir / f"{d.isoformat()}.jsonl"

    def _files(self) -> list[Path]:
        return sorted(self._dir.glob("*.jsonl"))

    # ---- Writing ----

    def record(self, event: AuditEvent) -> AuditEvent | None:
        """Stamp and persist *event*. Returns the stored event, or None on failure.

        In background mode the returned copy is stamped with sequence and
        timestamp; its hash is assigned when the writer thread persists it.
        """
        with self._stamp_lock:
            self._last_sequence += 1
            now = self._clock()
            if self._last_ts is not None and now < self._last_ts:
                now = self._last_ts
            self._last_ts = now
            stamped = event.model_copy(
                update={"sequence": self._last_sequence, "timestamp": now}
            )
            if self._queue is not None:
                self._queue.put(stamped)
                return stamped.model_copy()
            return self._persist(stamped)

    def _persist(self, event: AuditEvent) -> AuditEvent | None:
        with self._write_lock:
            event.prev_hash = self._last_hash
            event.hash = compute_hash(event)
            try:
                self._append_with_retry(event)
            except RetryError as e:
                err = AuditWriteFailed(
                    f"Audit event {event.event_id} ({event.event_type.value}) not written: "
                    f"{e.last_attempt.exception()}"
                )
                logger.error("%s: %s", type(err).__name__, err)
                return None
            self._last_hash = event.hash
        logger.debug("Audit event %d %s recorded", event.sequence, event.event_type.value)
        return event

    def _append_with_retry(self, event: AuditEvent) -> None:
        @retry(
            retry=retry_if_exception_type(Exception),
            stop=stop_after_attempt(self._RETRY_ATTEMPTS),
            wait=wait_exponential(
                multiplier=self._RETRY_WAIT_MIN, min=self._RETRY_WAIT_MIN, max=self._RETRY_WAIT_MAX
            ),
            reraise=False,
        )
        def _append() -> None:
            path = self._file_for_date(event.timestamp.date())
            with open(path, "a", encoding="utf-8") as f:
                f.write(event.model_dump_json() + "\n")
                f.flush()
                if self._fsync:
                    os.fsync(f.fileno())

        _append()

    def _drain(self, pending: queue.Queue) -> None:
        while True:
            item = pending.get()
            try:
                if item is _STOP:
                    return
                self._persist(item)
            finally:
                pending.task_done()

    def flush(self) -> None:
        """Block until every queued event has been written (or given up on)."""
        if self._queue is not None:
            self._queue.join()

    def close(self) -> None:
        if self._queue is not None and self._worker is not None and self._worker.is_alive():
            self._queue.put(_STOP)
            self._worker.join(timeout=10)
        self._queue = None

    def _recover_tail(self) -> tuple[int, str, datetime | None]:
        """Continue the chain from the newest stored event after a restart."""
        for path in reversed(self._files()):
            lines = [ln for ln in path.read_text(encoding="utf-8").splitlines() if ln.strip()]
            for line in reversed(lines):
                try:
                    last = AuditEvent.model_validate_json(line)
                except ValidationError:
                    logger.warning("Skipping unreadable audit line in %s", path.name)
                    continue
                return last.sequence, last.hash, last.timestamp
        return 0, GENESIS_HASH, None

    # ---- Reading ----

    def _read_all(self, since: datetime | None = None, until: datetime | None = None):
        """Yield stored events, file by file, skipping files outside the date range."""
        for path in self._files():
            try:
                day = date.fromisoformat(path.stem)
            except ValueError:
                continue
            if since is not None and day < since.date():
                continue
            if until is not None and day > until.date():
                continue
            for line in path.read_text(encoding="utf-8").splitlines():
                line = line.strip()
                if not line:
                    continue
                try:
                    yield AuditEvent.model_validate_json(line)
                except ValidationError:
                    logger.warning("Skipping unreadable audit line in %s", path.name)

    def query(self, q: AuditQuery | None = None) -> AuditPage:
        """Return one page of events matching *q*, ordered by (timestamp, sequence).

        Raises:
            ConfigurationError: malformed cursor or non-positive limit.
        """
        q = q or AuditQuery()
        self.flush()
        limit = self._default_page if q.limit is None else q.limit
        if limit < 1:
            raise ConfigurationError("limit must be a positive integer")
        limit = min(limit, self._max_page)
        try:
            offset = int(q.cursor) if q.cursor else 0
        except ValueError as e:
            raise ConfigurationError("Invalid cursor") from e
        if offset < 0:
            raise ConfigurationError("Invalid cursor")

        wanted = set(q.event_types)
        matches: list[AuditEvent] = []
        for ev in self._read_all(q.since, q.until):
            if q.principal_id and ev.principal_id != q.principal_id:
                continue
            if wanted and ev.event_type not in wanted:
                continue
            if q.since is not None and ev.timestamp < q.since:
                continue
            if q.until is not None and ev.timestamp > q.until:
                continue
            matches.append(ev)

        matches.sort(key=lambda e: (e.timestamp, e.sequence), reverse=q.order == "desc")
        page = matches[offset : offset + limit]
        more = offset + limit < len(matches)
        return AuditPage(
            events=page,
            next_cursor=str(offset + limit) if more else None,
            total=len(matches),
        )

    def verify_chain(self) -> ChainVerification:
        """Recompute every hash and check each ``prev_hash`` link in file order."""
        self.flush()
        expected_prev = GENESIS_HASH
        checked = 0
        for ev in self._read_all():
            if ev.prev_hash != expected_prev:
                return ChainVerification(
                    ok=False, checked=checked, broken_at=ev.event_id, reason="prev_hash mismatch"
                )
            if compute_hash(ev) != ev.hash:
                return ChainVerification(
                    ok=False, checked=checked, broken_at=ev.event_id, reason="hash mismatch"
                )
            expected_prev = ev.hash
            checked += 1
        return ChainVerification(ok=True, checked=checked)

    def export_csv(self, output_path: str | Path, q: AuditQuery | None = None) -> int:
        """Export matching events to CSV for compliance review.

        Returns:
            Number of events exported.
        """
        q = (q or AuditQuery()).model_copy(update={"limit": self._max_page, "cursor": None})
        fields = [
            "sequence",
            "event_id",
            "timestamp",
            "event_type",
            "result",
            "principal_id",
            "session_id",
            "resource",
            "action",
            "ip_address",
            "user_agent",
            "risk_score",
            "details",
            "hash",
        ]
        count = 0
        with open(output_path, "w", newline="", encoding="utf-8") as f:
            writer = csv.DictWriter(f, fieldnames=fields)
            writer.writeheader()
            while True:
                page = self.query(q)
                for ev in page.events:
                    writer.writerow(
                        {
                            "sequence": ev.sequence,
                            "event_id": ev.event_id,
                            "timestamp": ev.timestamp.isoformat(),
                            "event_type": ev.event_type.value,
                            "result": ev.result.value,
                            "principal_id": ev.principal_id or "",
                            "session_id": ev.session_id or "",
                            "resource": ev.resource,
                            "action": ev.action,
                            "ip_address": ev.ip_address,
                            "user_agent": ev.user_agent,
                            "risk_score": ev.risk_score,
                            "details": json.dumps(ev.details, sort_keys=True, default=str),
                            "hash": ev.hash,
                        }
                    )
                    count += 1
                if page.next_cursor is None:
                    break
                q = q.model_copy(update={"cursor": page.next_cursor})
        logger.info("Exported %d audit event(s) to %s", count, output_path)
        return count
