"""延迟持久化：写入在内存更新之后执行，不在请求内同步完成。"""

from __future__ import annotations

import logging
from collections import deque
from typing import Callable, Deque

logger = logging.getLogger(__name__)


class DeferredWriter:
    """待写入任务队列。

    ``flush`` 依次执行队列中的任务，失败的任务记录日志后丢弃，内存中的数据始终为准。
    """

    def __init__(self) -> None:
        self._pending: Deque[Callable[[], None]] = deque()

    @property
    def pending(self) -> int:
        return len(self._pending)

    def schedule(self, job: Callable[[], None]) -> None:
        self._pending.append(job)

    def flush(self) -> int:
        failed = 0
        while self._pending:
            job = self._pending.popleft()
            try:
                job()
            except Exception:
                failed += 1
                logger.exception("deferred persistence write failed")
        return failed
