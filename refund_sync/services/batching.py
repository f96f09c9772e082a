"""
分批并发执行：固定批大小，批内并发，批间固定延迟。

用于对账扫描，限制对网关的并发请求数以遵守其限流。
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Callable, Optional, Sequence

logger = logging.getLogger(__name__)

MIN_BATCH_SIZE = 3
MAX_BATCH_SIZE = 5


@dataclass
class BatchOutcome:
    item: Any
    result: Any = None
    error: Optional[Exception] = None


def clamp_batch_size(batch_size: int) -> int:
    return max(MIN_BATCH_SIZE, min(int(batch_size), MAX_BATCH_SIZE))


def run_in_batches(
    items: Sequence,
    handler: Callable[[Any], Any],
    batch_size: int,
    delay: float,
    sleep: Callable[[float], None] = time.sleep,
    fatal: tuple[type[BaseException], ...] = (),
) -> list[BatchOutcome]:
    """
    按批执行 handler，返回与 items 顺序一致的结果列表。

    - 同一批内的元素并发执行，批与批之间串行并等待 delay 秒（最后一批之后不等待）
    - handler 抛出的普通异常记录在对应 BatchOutcome.error 中，不中断后续处理
    - fatal 中列出的异常类型会直接向上抛出，终止整个执行

    Args:
        items: 待处理元素。
        handler: 单个元素的处理函数。
        batch_size: 每批元素数（会被限制在 3~5 之间）。
        delay: 批间延迟秒数。
        sleep: 等待函数，测试时可替换。
        fatal: 需要终止执行的异常类型。
    """
    batch_size = clamp_batch_size(batch_size)
    outcomes: list[BatchOutcome] = []
    total = len(items)

    for start in range(0, total, batch_size):
        batch = items[start:start + batch_size]
        with ThreadPoolExecutor(max_workers=len(batch)) as pool:
            futures = [pool.submit(handler, item) for item in batch]
            for item, future in zip(batch, futures):
                try:
                    outcomes.append(BatchOutcome(item=item, result=future.result()))
                except fatal:
                    raise
                except Exception as e:
                    logger.warning("批处理元素执行异常: item=%s, error=%s", item, e)
                    outcomes.append(BatchOutcome(item=item, error=e))

        if start + batch_size < total and delay > 0:
            sleep(delay)

    return outcomes
