import time
from typing import Callable, Optional


class LeadingEdgeThrottle:
    """前沿节流：每个时间窗口内最多执行一次回调，窗口内的后续触发直接丢弃。

    不做尾部补发；回调的返回值被忽略。
    """

    def __init__(
        self,
        callback: Callable[[], None],
        interval: float = 0.3,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._callback = callback
        self._interval = interval
        self._clock = clock
        self._last: Optional[float] = None

    def __call__(self) -> bool:
        """触发一次；返回回调是否真正执行。"""
        now = self._clock()
        if self._last is not None and now - self._last < self._interval:
            return False
        self._last = now
        self._callback()
        return True

    def reset(self) -> None:
        self._last = None
