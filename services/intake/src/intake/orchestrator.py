"""Bounded-concurrency batch extraction.

Images are processed in windows of ``concurrency`` items. Inside a window
all calls run concurrently; one failing image only produces an error entry
for itself. Results come back in submission order regardless of completion
order.
"""

from __future__ import annotations

import asyncio
import inspect
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, List, Optional, Protocol, Sequence, Union

from common.config import Settings
from common.logging import get_logger

from .errors import BatchSetupError, ExtractionError, InvalidModelError
from .normalization import Normalizer
from .preprocess import ImagePreprocessor
from .schemas import ExtractionResult

LOGGER = get_logger(__name__)

DEFAULT_CONCURRENCY = 3
DEFAULT_WINDOW_PAUSE = 0.2


class Extractor(Protocol):
    def supports(self, model: str) -> bool: ...

    async def extract(
        self, image: bytes, model: str, content_type: str = "image/jpeg"
    ) -> ExtractionResult: ...


@dataclass(frozen=True)
class BatchImage:
    data: bytes
    filename: Optional[str] = None
    image_ref: Optional[str] = None
    record_id: Optional[int] = None


@dataclass(frozen=True)
class BatchItemResult:
    index: int
    filename: Optional[str]
    image_ref: Optional[str]
    record_id: Optional[int]
    result: Optional[ExtractionResult] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


ProgressCallback = Callable[[int, int], Union[None, Awaitable[None]]]
ItemCallback = Callable[[BatchItemResult], Union[None, Awaitable[None]]]


async def _invoke(callback: Optional[Callable[..., Any]], *args: Any) -> None:
    """Call a sync or async callback; its failures are logged, never raised."""
    if callback is None:
        return
    try:
        outcome = callback(*args)
        if inspect.isawaitable(outcome):
            await outcome
    except Exception as exc:  # noqa: BLE001
        LOGGER.warning(
            "Batch callback failed",
            callback=getattr(callback, "__name__", repr(callback)),
            error=str(exc),
        )


class BatchOrchestrator:
    """Drive preprocess → extract → normalize for a list of images.

    The instance-wide semaphore keeps the number of in-flight extraction
    calls at or below ``concurrency`` even when several batches share one
    orchestrator.
    """

    def __init__(
        self,
        extractor: Extractor,
        normalizer: Normalizer,
        preprocessor: Optional[ImagePreprocessor] = None,
        concurrency: int = DEFAULT_CONCURRENCY,
        window_pause: float = DEFAULT_WINDOW_PAUSE,
        call_timeout: Optional[float] = 60.0,
        retries: int = 0,
    ) -> None:
        if concurrency < 1:
            raise BatchSetupError("concurrency must be at least 1")
        self.extractor = extractor
        self.normalizer = normalizer
        self.preprocessor = preprocessor or ImagePreprocessor()
        self.concurrency = concurrency
        self.window_pause = window_pause
        self.call_timeout = call_timeout
        self.retries = max(0, retries)
        self._slots = asyncio.Semaphore(concurrency)

    @classmethod
    def from_settings(
        cls, settings: Settings, extractor: Extractor, normalizer: Normalizer
    ) -> "BatchOrchestrator":
        return cls(
            extractor=extractor,
            normalizer=normalizer,
            preprocessor=ImagePreprocessor(
                max_dimension=settings.image_max_dimension,
                jpeg_quality=settings.image_jpeg_quality,
            ),
            concurrency=settings.batch_concurrency,
            window_pause=settings.batch_window_pause_seconds,
            call_timeout=settings.vision_timeout_seconds,
            retries=settings.batch_retries,
        )

    def validate(self, items: Sequence[BatchImage], model: str) -> None:
        """Raise :class:`BatchSetupError` when the batch cannot start."""
        if not items:
            raise BatchSetupError("No images provided")
        if not self.extractor.supports(model):
            raise InvalidModelError(model)

    async def run(
        self,
        items: Sequence[BatchImage],
        model: str,
        on_progress: Optional[ProgressCallback] = None,
        on_item: Optional[ItemCallback] = None,
        should_continue: Optional[Callable[[], bool]] = None,
    ) -> List[BatchItemResult]:
        """Process ``items`` and return one result per item in input order.

        ``should_continue`` is consulted before every window after the first;
        when it returns False the remaining items are skipped and only the
        finished results are returned.
        """
        self.validate(items, model)

        total = len(items)
        completed = 0
        results: List[BatchItemResult] = []
        LOGGER.info(
            "Starting batch extraction",
            total=total,
            concurrency=self.concurrency,
            model=model,
        )

        async def _run_one(index: int, item: BatchImage) -> BatchItemResult:
            nonlocal completed
            outcome = await self._process(index, item, model)
            completed += 1
            await _invoke(on_progress, completed, total)
            await _invoke(on_item, outcome)
            return outcome

        for start in range(0, total, self.concurrency):
            if start and should_continue is not None and not should_continue():
                LOGGER.info("Batch stopped early", completed=completed, total=total)
                break
            window = items[start : start + self.concurrency]
            window_results = await asyncio.gather(
                *(_run_one(start + offset, item) for offset, item in enumerate(window))
            )
            results.extend(window_results)
            if start + self.concurrency < total and self.window_pause > 0:
                await asyncio.sleep(self.window_pause)

        results.sort(key=lambda entry: entry.index)
        failed = sum(1 for entry in results if not entry.ok)
        LOGGER.info("Batch extraction complete", total=total, failed=failed)
        return results

    async def _process(self, index: int, item: BatchImage, model: str) -> BatchItemResult:
        try:
            prepared = await asyncio.to_thread(self.preprocessor.prepare, item.data)
            raw = await self._extract_with_retries(prepared.data, prepared.content_type, model)
            result = self.normalizer.normalize(raw)
        except Exception as exc:  # noqa: BLE001
            message = str(exc) or exc.__class__.__name__
            LOGGER.warning(
                "Image extraction failed",
                index=index,
                filename=item.filename,
                image_ref=item.image_ref,
                error=message,
            )
            return BatchItemResult(
                index=index,
                filename=item.filename,
                image_ref=item.image_ref,
                record_id=item.record_id,
                error=message,
            )

        return BatchItemResult(
            index=index,
            filename=item.filename,
            image_ref=item.image_ref,
            record_id=item.record_id,
            result=result,
        )

    async def _extract_with_retries(
        self, data: bytes, content_type: str, model: str
    ) -> ExtractionResult:
        attempt = 0
        while True:
            try:
                return await self._extract_once(data, content_type, model)
            except ExtractionError as exc:
                if attempt >= self.retries:
                    raise
                attempt += 1
                LOGGER.info("Retrying extraction", attempt=attempt, error=str(exc))

    async def _extract_once(self, data: bytes, content_type: str, model: str) -> ExtractionResult:
        async with self._slots:
            try:
                return await asyncio.wait_for(
                    self.extractor.extract(data, model, content_type),
                    timeout=self.call_timeout,
                )
            except asyncio.TimeoutError as exc:
                raise ExtractionError("Vision request timed out") from exc


__all__ = [
    "BatchImage",
    "BatchItemResult",
    "BatchOrchestrator",
    "Extractor",
    "ItemCallback",
    "ProgressCallback",
]
