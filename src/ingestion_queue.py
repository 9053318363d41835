"""
支払い証明イベントの取り込みキュー

複数のプロデューサーから同時に届くイベントを1本のFIFOに直列化し、
単一のワーカーが1件ずつパイプラインを最後まで実行する。
失敗したイベントはログに残して破棄する（リトライ・デッドレターなし）。
"""

import logging
import queue
import threading
import time
from typing import Callable, Optional

from payment_models import PaymentEvidenceEvent

logger = logging.getLogger(__name__)


class IngestionQueue:
    """単一コンシューマーのイベントキュー"""

    def __init__(
        self,
        handler: Callable[[PaymentEvidenceEvent], object],
        max_size: int = 0,
        idle_delay: float = 0.1,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Args:
            handler: 1イベント分のパイプラインを実行する関数
            max_size: キューの上限（0 で無制限）。満杯時は受け付けずに破棄する
            idle_delay: 1件処理した後に次を取り出すまでの待機秒数
        """
        self._handler = handler
        self._queue: "queue.Queue[PaymentEvidenceEvent]" = queue.Queue(maxsize=max_size)
        self.max_size = max_size
        self.idle_delay = idle_delay
        self._sleep = sleep
        self._stop = threading.Event()
        self._worker: Optional[threading.Thread] = None
        self._counter_lock = threading.Lock()
        self.processed_count = 0
        self.failed_count = 0

    @property
    def pending_count(self) -> int:
        return self._queue.qsize()

    def accept(self, event: PaymentEvidenceEvent) -> bool:
        """末尾に追加する。複数スレッドから同時に呼んでよい"""
        try:
            self._queue.put_nowait(event)
        except queue.Full:
            logger.warning("⚠️ キューが満杯 (%d) のためイベントを破棄: %s", self.max_size, event.event_id)
            return False
        logger.info("📥 イベント受付: %s (待ち %d件)", event.event_id, self._queue.qsize())
        return True

    def process_next(self, block: bool = False, timeout: Optional[float] = None) -> bool:
        """1件取り出して処理する。取り出せなかった場合は False"""
        try:
            event = self._queue.get(block=block, timeout=timeout)
        except queue.Empty:
            return False

        logger.info("📤 イベント処理開始: %s (残り %d件)", event.event_id, self._queue.qsize())
        try:
            self._handler(event)
            with self._counter_lock:
                self.processed_count += 1
        except Exception:
            with self._counter_lock:
                self.failed_count += 1
            logger.exception("❌ イベント処理に失敗したため破棄します: %s", event.event_id)
        finally:
            self._queue.task_done()
        return True

    def drain(self) -> int:
        """呼び出しスレッドでキューが空になるまで処理し、処理件数を返す"""
        if self._worker and self._worker.is_alive():
            raise RuntimeError("drain() cannot run while the worker thread is consuming the queue")
        count = 0
        while self.process_next():
            count += 1
        return count

    def _run(self) -> None:
        while not self._stop.is_set():
            if self.process_next(block=True, timeout=0.5):
                self._sleep(self.idle_delay)

    def start(self) -> None:
        if self._worker and self._worker.is_alive():
            return
        self._stop.clear()
        self._worker = threading.Thread(target=self._run, name="payment-ingestion-worker", daemon=True)
        self._worker.start()
        logger.info("🚀 取り込みワーカー起動")

    def join(self) -> None:
        """投入済みの全イベントが処理されるまで待つ"""
        self._queue.join()

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        if self._worker:
            self._worker.join(timeout)
            self._worker = None
        logger.info("🛑 取り込みワーカー停止 (処理 %d件 / 失敗 %d件)", self.processed_count, self.failed_count)
