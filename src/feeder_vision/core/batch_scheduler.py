"""
batch_scheduler.py: Runs decode and inference as a two-stage pipeline.

Frames are decoded on a thread pool while the previous batch is in the model;
an asyncio semaphore keeps at most two batches in flight. Large folders can
let the scheduler tune the batch size from the first few batch timings.
"""

import asyncio
import contextlib
import os
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence

import numpy as np

from .classifier import Classification, Classifier
from .folder_scanner import FrameRecord
from .preprocessor import PreparedFrame, prepare_frame
from ..utils.log_utils import get_logger

logger = get_logger(__name__)

DEFAULT_BATCH_SIZE = 8
# One batch in inference, one being prepared
PIPELINE_DEPTH = 2

AUTO_BATCH_MIN_TOTAL = 1000
AUTO_BATCH_TUNE_BATCHES = 4
AUTO_BATCH_MIN_IMPROVEMENT = 0.15

ProgressCallback = Callable[[int, int], None]


@dataclass
class FrameResult:
    """Pipeline output for one frame; classification is None when decoding failed."""
    frame: FrameRecord
    classification: Optional[Classification]


@dataclass
class BatchTiming:
    batch_size: int
    frames: int
    tensors: int
    prep_ms: float
    forward_ms: float

    @property
    def total_ms(self) -> float:
        return self.prep_ms + self.forward_ms


@dataclass
class PreparedBatch:
    start: int
    items: List[PreparedFrame]
    prep_ms: float


def choose_batch_size(per_frame_seconds: Dict[int, float], baseline: int) -> int:
    """
    Pick the batch size for the rest of a scan from tuning measurements.
    A larger size is only chosen when it is at least 15% faster per frame than the baseline.
    """
    if not per_frame_seconds:
        return baseline
    base_time = per_frame_seconds.get(baseline)
    if base_time is None:
        return next(iter(per_frame_seconds))
    chosen, best_time = baseline, base_time
    for size, per_frame in per_frame_seconds.items():
        if size == baseline:
            continue
        if per_frame < base_time * (1.0 - AUTO_BATCH_MIN_IMPROVEMENT) and per_frame < best_time:
            chosen, best_time = size, per_frame
    return chosen


class BatchScheduler:
    """
    Two-stage producer/consumer pipeline feeding batches to the classifier.

    The producer preprocesses batch N+1 on a thread pool while the consumer runs
    inference on batch N. A semaphore with PIPELINE_DEPTH slots is acquired before
    a batch is prepared and released once it is classified, so batch N+2 is not
    started until batch N is done. Inference runs on a single dedicated thread.
    """

    def __init__(
        self,
        classifier: Classifier,
        batch_size: int = DEFAULT_BATCH_SIZE,
        max_workers: Optional[int] = None,
        preprocess: Callable[..., PreparedFrame] = prepare_frame,
    ) -> None:
        self.classifier = classifier
        self.batch_size = max(1, batch_size)
        self.max_workers = max_workers or os.cpu_count() or 1
        self._preprocess = preprocess
        self.timings: List[BatchTiming] = []
        self.chosen_batch_size = self.batch_size

    def run(
        self,
        frames: Sequence[FrameRecord],
        progress: Optional[ProgressCallback] = None,
        auto_batch: bool = False,
    ) -> List[FrameResult]:
        """Classify all frames and return one FrameResult per frame, in input order."""
        return asyncio.run(self.run_async(frames, progress, auto_batch))

    async def run_async(
        self,
        frames: Sequence[FrameRecord],
        progress: Optional[ProgressCallback] = None,
        auto_batch: bool = False,
    ) -> List[FrameResult]:
        frames = list(frames)
        total = len(frames)
        results: List[Optional[FrameResult]] = [None] * total
        if total == 0:
            return []

        done = 0

        def report(count: int) -> None:
            nonlocal done
            done += count
            if progress:
                progress(min(done, total), total)

        logger.info("Classifying %d frames with %d preprocessing workers", total, self.max_workers)
        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="preprocess") as pool, \
                ThreadPoolExecutor(max_workers=1, thread_name_prefix="inference") as inference:
            offset = 0
            batch_size = self.batch_size
            if auto_batch and total >= AUTO_BATCH_MIN_TOTAL:
                per_frame: Dict[int, float] = {}
                for candidate in (self.batch_size, self.batch_size + self.batch_size // 2):
                    tune_len = candidate * AUTO_BATCH_TUNE_BATCHES
                    if offset + tune_len > total:
                        break
                    started = time.perf_counter()
                    await self._pipeline(frames, offset, offset + tune_len, candidate,
                                         results, pool, inference, report)
                    per_frame[candidate] = (time.perf_counter() - started) / tune_len
                    offset += tune_len
                batch_size = choose_batch_size(per_frame, self.batch_size)
                logger.info("Auto batch size: %d (per-frame seconds: %s)", batch_size,
                            {k: round(v, 4) for k, v in per_frame.items()})
            self.chosen_batch_size = batch_size
            if offset < total:
                await self._pipeline(frames, offset, total, batch_size, results, pool, inference, report)

        return [r for r in results if r is not None]

    async def _pipeline(self, frames, start, stop, batch_size, results, pool, inference, report) -> None:
        loop = asyncio.get_running_loop()
        slots = asyncio.Semaphore(PIPELINE_DEPTH)
        queue: asyncio.Queue = asyncio.Queue()

        async def produce() -> None:
            try:
                for batch_start in range(start, stop, batch_size):
                    await slots.acquire()
                    batch_stop = min(batch_start + batch_size, stop)
                    queue.put_nowait(await self._prepare_batch(loop, pool, frames, batch_start, batch_stop))
            finally:
                queue.put_nowait(None)

        producer = asyncio.create_task(produce())
        try:
            while True:
                batch = await queue.get()
                if batch is None:
                    break
                try:
                    await self._classify_batch(loop, inference, batch, batch_size, results)
                finally:
                    slots.release()
                report(len(batch.items))
        except BaseException:
            producer.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await producer
            raise
        await producer

    async def _prepare_batch(self, loop, pool, frames, start: int, stop: int) -> PreparedBatch:
        started = time.perf_counter()
        geometry = self.classifier.geometry
        jobs = [
            loop.run_in_executor(pool, self._preprocess, index, frames[index], geometry)
            for index in range(start, stop)
        ]
        items = await asyncio.gather(*jobs)
        return PreparedBatch(start=start, items=list(items), prep_ms=(time.perf_counter() - started) * 1000)

    async def _classify_batch(self, loop, inference, batch: PreparedBatch, batch_size: int, results) -> None:
        ready = [item for item in batch.items if item.ok]
        classifications: List[Classification] = []
        forward_ms = 0.0
        if ready:
            tensor = np.stack([item.tensor for item in ready])
            started = time.perf_counter()
            classifications = await loop.run_in_executor(inference, self.classifier.classify_batch, tensor)
            forward_ms = (time.perf_counter() - started) * 1000

        by_index = {item.index: c for item, c in zip(ready, classifications)}
        for item in batch.items:
            results[item.index] = FrameResult(item.frame, by_index.get(item.index))

        timing = BatchTiming(
            batch_size=batch_size,
            frames=len(batch.items),
            tensors=len(ready),
            prep_ms=batch.prep_ms,
            forward_ms=forward_ms,
        )
        self.timings.append(timing)
        logger.debug(
            "batch_size=%d, chunk_len=%d, tensors=%d, prep_ms=%.0f, forward_ms=%.0f, total_ms=%.0f",
            timing.batch_size, timing.frames, timing.tensors, timing.prep_ms, timing.forward_ms, timing.total_ms,
        )
