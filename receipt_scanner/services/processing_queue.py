# receipt_scanner/services/processing_queue.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Iterable, List, Optional, Tuple

from receipt_scanner.errors import QueueBusyError
from receipt_scanner.logging_utils import get_logger
from receipt_scanner.schemas import ProcessResult, ProcessingStatus, ReceiptData, SaveResult

log = get_logger(__name__)

AnalyzeFn = Callable[["QueueItem"], ReceiptData]
SaveFn = Callable[[ReceiptData, "QueueItem"], SaveResult]

ACTIVE_STATUSES = ("analyzing", "awaiting_confirmation", "saving")
FINAL_STATUSES = ("saved", "duplicate", "error", "not_configured", "skipped")


@dataclass
class QueueItem:
    filename: str
    content: bytes
    mime_type: str = "image/jpeg"
    status: ProcessingStatus = "pending"
    data: Optional[ReceiptData] = None
    error: Optional[str] = None
    save_result: Optional[SaveResult] = None

    @property
    def size(self) -> int:
        return len(self.content)

    def to_result(self) -> ProcessResult:
        return ProcessResult(filename=self.filename, status=self.status, data=self.data, error=self.error)


@dataclass
class ProcessingQueue:
    """
    Ordered receipts awaiting analysis and saving.

    At most one item is active (analyzing, awaiting confirmation or saving)
    at any time. A failure marks that item and the rest of the queue is
    still processed.
    """
    items: List[QueueItem] = field(default_factory=list)

    # --------------------------------------------------------------------------
    # Building the queue
    # --------------------------------------------------------------------------

    def add_files(self, files: Iterable[Tuple[str, bytes, Optional[str]]]) -> int:
        """Queue (name, content, mime) tuples; same name + size is skipped."""
        seen = {(i.filename, i.size) for i in self.items}
        added = 0
        for name, content, mime in files:
            key = (name, len(content))
            if key in seen:
                log.info("Skipping %s: already queued", name)
                continue
            seen.add(key)
            self.items.append(QueueItem(filename=name, content=content, mime_type=mime or "image/jpeg"))
            added += 1
        return added

    def clear(self) -> None:
        self.items = []

    # --------------------------------------------------------------------------
    # State
    # --------------------------------------------------------------------------

    @property
    def current(self) -> Optional[QueueItem]:
        for item in self.items:
            if item.status in ACTIVE_STATUSES:
                return item
        return None

    @property
    def pending(self) -> List[QueueItem]:
        return [i for i in self.items if i.status == "pending"]

    @property
    def is_done(self) -> bool:
        return bool(self.items) and all(i.status in FINAL_STATUSES for i in self.items)

    @property
    def has_saved(self) -> bool:
        return any(i.status == "saved" for i in self.items)

    def position(self) -> Tuple[int, int]:
        """1-based index of the item being worked on, and the queue length."""
        cur = self.current
        if cur is None:
            done = sum(1 for i in self.items if i.status in FINAL_STATUSES)
            return done, len(self.items)
        return self.items.index(cur) + 1, len(self.items)

    def progress_text(self) -> str:
        idx, total = self.position()
        if total == 0:
            return ""
        if self.current is None and self.is_done:
            return f"Processed {total} of {total}"
        return f"Processing {max(idx, 1)} of {total}..."

    def results(self) -> List[ProcessResult]:
        return [i.to_result() for i in self.items]

    # --------------------------------------------------------------------------
    # Confirmation flow (one receipt at a time, user reviews each draft)
    # --------------------------------------------------------------------------

    def analyze_next(self, analyze: AnalyzeFn) -> Optional[QueueItem]:
        """
        Analyze the next pending item. Failed items are marked and skipped
        over until one reaches awaiting_confirmation or the queue runs out.
        """
        if self.current is not None:
            raise QueueBusyError(f"{self.current.filename} is still {self.current.status}")

        for item in self.pending:
            item.status = "analyzing"
            try:
                item.data = analyze(item)
            except Exception as e:
                log.warning("Analysis failed for %s: %s", item.filename, e)
                item.status = "error"
                item.error = str(e)
                continue
            item.status = "awaiting_confirmation"
            return item
        return None

    def confirm(self, edited: ReceiptData, save: SaveFn) -> QueueItem:
        item = self._awaiting()
        item.data = edited
        item.status = "saving"
        try:
            result = save(edited, item)
        except Exception as e:
            log.warning("Save failed for %s: %s", item.filename, e)
            item.status = "error"
            item.error = str(e)
            return item

        self._apply_save(item, result)
        return item

    def skip(self) -> QueueItem:
        item = self._awaiting()
        item.status = "skipped"
        return item

    def _awaiting(self) -> QueueItem:
        cur = self.current
        if cur is None or cur.status != "awaiting_confirmation":
            raise QueueBusyError("No receipt is waiting for confirmation")
        return cur

    @staticmethod
    def _apply_save(item: QueueItem, result: SaveResult) -> None:
        item.save_result = result
        item.status = result.status
        if result.receipt is not None:
            item.data = result.receipt
        item.error = result.error if result.status != "saved" else None

    # --------------------------------------------------------------------------
    # Automatic flow (analyze + save without review)
    # --------------------------------------------------------------------------

    def run_all(
        self,
        analyze: AnalyzeFn,
        save: SaveFn,
        on_progress: Optional[Callable[[str], None]] = None,
    ) -> List[ProcessResult]:
        for item in self.pending:
            if on_progress is not None:
                on_progress(f"Processing {self.items.index(item) + 1} of {len(self.items)}...")

            item.status = "analyzing"
            try:
                item.data = analyze(item)
                item.status = "saving"
                result = save(item.data, item)
            except Exception as e:
                log.warning("Processing failed for %s: %s", item.filename, e)
                item.status = "error"
                item.error = str(e)
                continue
            self._apply_save(item, result)

        return self.results()
