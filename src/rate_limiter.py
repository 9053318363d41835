"""
認識サービス呼び出し用のスライディングウィンドウ・レートリミッター

直近 window_seconds 秒に記録された呼び出しが max_calls 未満になるまで
呼び出し元を待たせてから、その呼び出しを記録する。
固定ウィンドウではないため、境界をまたいで 2N 回のバーストは起きない。
"""

import logging
import threading
import time
from collections import deque
from typing import Callable, Dict

logger = logging.getLogger(__name__)


class SlidingWindowRateLimiter:
    """時刻関数と sleep 関数を注入できるレートリミッター"""

    def __init__(
        self,
        max_calls: int = 10,
        window_seconds: float = 60.0,
        min_interval_seconds: float = 0.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if max_calls <= 0:
            raise ValueError("max_calls must be positive")
        self.max_calls = max_calls
        self.window_seconds = window_seconds
        self.min_interval_seconds = min_interval_seconds
        self._clock = clock
        self._sleep = sleep
        self._calls: deque = deque()
        self._lock = threading.Lock()

    def _evict(self, now: float) -> None:
        while self._calls and now - self._calls[0] >= self.window_seconds:
            self._calls.popleft()

    def wait_for_slot(self) -> float:
        """空きができるまでブロックし、呼び出しを記録してその時刻を返す"""
        while True:
            with self._lock:
                now = self._clock()
                self._evict(now)

                if len(self._calls) >= self.max_calls:
                    # 最古の呼び出しがウィンドウから外れるまで待つ
                    wait = self._calls[0] + self.window_seconds - now
                    logger.info(
                        "⏳ レート制限到達 (%d/%d)。%.1f秒待機します",
                        len(self._calls), self.max_calls, wait,
                    )
                elif self._calls and now - self._calls[-1] < self.min_interval_seconds:
                    wait = self.min_interval_seconds - (now - self._calls[-1])
                    logger.debug("⏳ 呼び出し間隔調整: %.2f秒待機", wait)
                else:
                    self._calls.append(now)
                    logger.debug("📊 レートリミッター: %d/%d (直近%.0f秒)", len(self._calls), self.max_calls, self.window_seconds)
                    return now

            self._sleep(max(wait, 0.0))

    def status(self) -> Dict[str, float]:
        with self._lock:
            self._evict(self._clock())
            current = len(self._calls)
        return {
            "current_requests": current,
            "max_requests": self.max_calls,
            "available": self.max_calls - current,
            "min_interval_seconds": self.min_interval_seconds,
        }
