"""
Batch explanation orchestrator.

Drives one batch through its states:

    IDLE -> ANALYZING_REGIONS -> AWAITING_USER_SELECTION (optional)
         -> CHARGING -> GENERATING -> COMPLETED | CANCELLED | FAILED

Quota is charged once for the whole batch before any generation call, and
whatever does not complete is refunded once when generation ends. At every
terminal state `charged == completed + refunded` unless the refund itself failed,
in which case `accounting_error` is set.
"""
import asyncio
import itertools
import logging
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Protocol, Tuple

from config.settings import settings as default_settings
from core.cancellation import CancellationToken
from core.constants import MODE_LABELS, STATUS_MESSAGES
from core.exceptions import QuotaAccountingError, QuotaExceededError
from core.models import (
    BatchResult, BatchState, ChargeResult, ExplanationMode, ExplanationRecord,
    PageAnalysis, PageImage, UserSelection
)
from detection.detector import RegionDetector
from utils.image_utils import crop_bbox, image_to_base64

logger = logging.getLogger(__name__)


class QuotaLedger(Protocol):
    """Atomic usage counter for one user."""

    def remaining(self, mode: ExplanationMode) -> Optional[int]:
        ...

    def charge(self, mode: ExplanationMode, count: int) -> ChargeResult:
        ...

    def refund(self, mode: ExplanationMode, count: int) -> None:
        ...


@dataclass
class BatchCallbacks:
    """Optional event hooks. Every hook is called synchronously."""
    on_regions_detected: Optional[Callable] = None   # (page_number, bboxes)
    on_record_created: Optional[Callable] = None     # (record)
    on_record_updated: Optional[Callable] = None     # (record)
    on_record_dropped: Optional[Callable] = None     # (record)
    on_batch_state_changed: Optional[Callable] = None  # (state)
    on_status: Optional[Callable] = None             # (message)
    on_error: Optional[Callable] = None              # (exception)


@dataclass
class BatchRun:
    """A charged batch waiting for (or going through) generation."""
    result: BatchResult
    items: List[Tuple[ExplanationRecord, UserSelection]]
    pages: Dict[int, PageImage]
    token: CancellationToken
    guidelines: str = ""


def sort_selections(selections: List[UserSelection]) -> List[UserSelection]:
    """Order selections by page, then top-to-bottom."""
    return sorted(selections, key=lambda s: (s.page_number, s.bbox.y_min, s.bbox.x_min))


class BatchOrchestrator:
    """
    Runs detection, charging, generation and refunds for one user session.

    Only one batch runs at a time per orchestrator; items are generated
    sequentially so quota accounting stays exact.
    """

    def __init__(
        self,
        generator,
        ledger: Optional[QuotaLedger] = None,
        detector: Optional[RegionDetector] = None,
        callbacks: Optional[BatchCallbacks] = None,
        settings=None
    ):
        """
        Args:
            generator: Object with async `recognize_region` and `generate_explanation`
                (see ExplanationService)
            ledger: Quota ledger for the user; only needed to charge batches
            detector: Region detector (defaults to one built from settings)
            callbacks: Event hooks
            settings: Settings instance (defaults to global settings)
        """
        self.settings = settings or default_settings
        self.generator = generator
        self.ledger = ledger
        self.detector = detector or RegionDetector.from_settings(self.settings)
        self.callbacks = callbacks or BatchCallbacks()

        self.state = BatchState.IDLE
        self.records: List[ExplanationRecord] = []
        self.analyses: List[PageAnalysis] = []
        self._ids = itertools.count(1)

    # Events

    def _emit(self, name: str, *args) -> None:
        callback = getattr(self.callbacks, name)
        if callback is not None:
            callback(*args)

    def _set_state(self, state: BatchState) -> None:
        self.state = state
        logger.debug(f"Batch state -> {state.value}")
        self._emit('on_batch_state_changed', state)

    def _status(self, key: str, **values) -> None:
        self._emit('on_status', STATUS_MESSAGES[key].format(**values))

    def get_record(self, record_id: int) -> Optional[ExplanationRecord]:
        for record in self.records:
            if record.id == record_id:
                return record
        return None

    # Analysis

    async def analyze_pages(
        self,
        pages: List[PageImage],
        token: CancellationToken,
        recognize: bool = True
    ) -> List[PageAnalysis]:
        """
        Detect problem regions on each page and recognize their text.

        Regions whose recognition fails are left out of `problems` but stay in
        `regions`. Cancellation is honoured between pages and between regions.

        Args:
            pages: Pages in upload order
            token: Cancellation token
            recognize: Run recognition for each detected region

        Returns:
            One PageAnalysis per analyzed page
        """
        self._set_state(BatchState.ANALYZING_REGIONS)
        analyses = []

        for page in pages:
            if token.cancelled:
                break

            bboxes = self.detector.detect(page.image)
            logger.info(f"Page {page.page_number}: {len(bboxes)} regions detected")
            self._emit('on_regions_detected', page.page_number, bboxes)

            analysis = PageAnalysis(page_number=page.page_number, regions=bboxes)
            if recognize:
                for bbox in bboxes:
                    if token.cancelled:
                        break
                    try:
                        problem = await asyncio.wait_for(
                            self.generator.recognize_region(page.image, bbox, token=token),
                            timeout=self.settings.recognition_timeout
                        )
                    except asyncio.TimeoutError:
                        logger.warning(f"Page {page.page_number}: recognition timed out")
                        continue
                    except Exception as e:
                        logger.warning(f"Page {page.page_number}: recognition failed: {e}")
                        continue
                    analysis.problems.append(problem)

            analyses.append(analysis)

        self.analyses = analyses
        return analyses

    # Charging

    def prepare_batch(
        self,
        selections: List[UserSelection],
        pages: List[PageImage],
        mode: ExplanationMode,
        token: CancellationToken,
        guidelines: str = ""
    ) -> BatchRun:
        """
        Charge quota for the whole batch and create loading placeholders.

        Raises:
            QuotaExceededError: If more explanations are requested than remain;
                nothing is charged and no records are created
            RuntimeError: If the orchestrator was built without a ledger
        """
        if self.ledger is None:
            raise RuntimeError("A quota ledger is required to charge a batch")
        mode = ExplanationMode(mode)
        ordered = sort_selections(selections)
        requested = len(ordered)
        result = BatchResult(state=BatchState.CHARGING, mode=mode, requested=requested)
        self._set_state(BatchState.CHARGING)

        remaining = self.ledger.remaining(mode)
        if remaining is not None and requested > remaining:
            raise QuotaExceededError(mode.value, requested, remaining)

        charge = self.ledger.charge(mode, requested)
        if not charge.ok:
            raise QuotaExceededError(
                mode.value, requested, charge.remaining if charge.remaining is not None else 0
            )
        result.charged = requested

        page_map = {page.page_number: page for page in pages}
        self._status('creating_cards')
        items = []
        for number, selection in enumerate(ordered, start=1):
            record = ExplanationRecord(
                id=next(self._ids),
                page_number=selection.page_number,
                problem_number=number,
                mode=mode,
                markdown=STATUS_MESSAGES['placeholder'],
                bbox=selection.bbox,
                original_problem_text=selection.initial_text or "",
                image=self._crop_preview(page_map.get(selection.page_number), selection)
            )
            self.records.append(record)
            result.records.append(record)
            items.append((record, selection))
            self._emit('on_record_created', record)

        return BatchRun(result=result, items=items, pages=page_map, token=token, guidelines=guidelines)

    def _crop_preview(self, page: Optional[PageImage], selection: UserSelection) -> str:
        if page is None:
            return ""
        try:
            return image_to_base64(crop_bbox(page.image, selection.bbox))
        except ValueError:
            return ""

    # Generation

    async def _generate_record(
        self,
        record: ExplanationRecord,
        page: Optional[PageImage],
        token: Optional[CancellationToken],
        guidelines: str
    ) -> bool:
        """
        Fill one record. Returns True on success; failures mark the record as errored.

        The caller decides what to do when cancellation is observed afterwards.
        """
        try:
            text = record.original_problem_text
            if not text:
                if page is None:
                    raise ValueError(f"Page {record.page_number} is not available")
                self._status('recognizing', page=record.page_number, number=record.problem_number)
                problem = await asyncio.wait_for(
                    self.generator.recognize_region(page.image, record.bbox, token=token),
                    timeout=self.settings.recognition_timeout
                )
                text = problem.full_text
                record.original_problem_text = text
                if token is not None and token.cancelled:
                    return False

            self._status('generating', page=record.page_number, number=record.problem_number)
            generated = await asyncio.wait_for(
                self.generator.generate_explanation(
                    text, record.mode, guidelines=guidelines, token=token
                ),
                timeout=self.settings.generation_timeout
            )
        except Exception as e:
            if token is not None and token.cancelled:
                return False
            if isinstance(e, asyncio.TimeoutError):
                logger.warning(f"Problem {record.problem_number}: generation timed out")
            else:
                logger.warning(f"Problem {record.problem_number}: generation failed: {e}")
            record.is_loading = False
            record.is_error = True
            record.markdown = STATUS_MESSAGES['retry_failed']
            self._emit('on_record_updated', record)
            return False

        record.markdown = generated.markdown
        record.core_concepts = list(generated.core_concepts)
        record.difficulty = generated.difficulty
        record.is_loading = False
        record.is_error = False
        self._emit('on_record_updated', record)
        return True

    async def generate(self, run: BatchRun) -> BatchResult:
        """
        Generate every record of a charged batch, then refund what did not complete.

        Items run sequentially in page/top-to-bottom order. The token is checked
        before each item and after each external call; a failing item never
        stops the batch. If the task itself is cancelled, the token is signalled
        so the batch ends CANCELLED with its unfinished records dropped, and
        the CancelledError is re-raised.
        """
        result = run.result
        token = run.token
        self._set_state(BatchState.GENERATING)
        self._status('starting', count=len(run.items))

        try:
            for record, selection in run.items:
                if token.cancelled:
                    break
                ok = await self._generate_record(
                    record, run.pages.get(selection.page_number), token, run.guidelines
                )
                if ok:
                    result.completed += 1
                if token.cancelled:
                    break
        except asyncio.CancelledError:
            logger.warning("Batch task cancelled; treating as user cancellation")
            token.cancel()
            raise
        finally:
            self._finish(result, token)

        return result

    def _finish(self, result: BatchResult, token: CancellationToken) -> None:
        if token.cancelled:
            for record in [r for r in result.records if r.is_loading]:
                result.records.remove(record)
                if record in self.records:
                    self.records.remove(record)
                self._emit('on_record_dropped', record)
            result.state = BatchState.CANCELLED
            self._status('cancelled')
        else:
            result.state = BatchState.COMPLETED
            self._status('completed')

        refund_count = result.charged - result.completed
        if refund_count > 0:
            try:
                self.ledger.refund(result.mode, refund_count)
            except Exception as e:
                result.accounting_error = STATUS_MESSAGES['refund_failed']
                logger.error(
                    f"Refund of {refund_count} {result.mode.value} explanations failed: {e}"
                )
                self._status('refund_failed')
                self._emit('on_error', QuotaAccountingError(result.accounting_error))
            else:
                result.refunded = refund_count
                self._status('refunded', count=refund_count)

        logger.info(
            f"Batch {result.state.value}: requested={result.requested} "
            f"charged={result.charged} completed={result.completed} refunded={result.refunded}"
        )
        self._set_state(result.state)

    async def start_batch(
        self,
        selections: List[UserSelection],
        pages: List[PageImage],
        mode: ExplanationMode,
        token: CancellationToken,
        guidelines: str = ""
    ) -> BatchResult:
        """
        Charge and generate explanations for confirmed selections.

        Returns:
            BatchResult in a terminal state. A quota-exceeded batch ends FAILED
            with nothing charged and no records created.
        """
        mode = ExplanationMode(mode)
        if not selections:
            self._status('nothing_detected')
            self._set_state(BatchState.COMPLETED)
            return BatchResult(state=BatchState.COMPLETED, mode=mode)

        if token.cancelled:
            self._status('cancelled')
            self._set_state(BatchState.CANCELLED)
            return BatchResult(state=BatchState.CANCELLED, mode=mode, requested=len(selections))

        try:
            run = self.prepare_batch(selections, pages, mode, token, guidelines=guidelines)
        except QuotaExceededError as e:
            logger.info(str(e))
            message = STATUS_MESSAGES['quota_exceeded'].format(
                label=MODE_LABELS[mode.value], remaining=e.remaining
            )
            self._emit('on_status', message)
            self._emit('on_error', e)
            self._set_state(BatchState.FAILED)
            return BatchResult(
                state=BatchState.FAILED, mode=mode, requested=len(selections), error=message
            )

        return await self.generate(run)

    async def run(
        self,
        pages: List[PageImage],
        mode: ExplanationMode,
        token: CancellationToken,
        manual_selection: bool = False,
        guidelines: str = ""
    ) -> BatchResult:
        """
        Analyze pages and, unless manual selection is requested, generate
        explanations for every recognized problem.

        With `manual_selection` the batch stops in AWAITING_USER_SELECTION; the
        caller confirms selections (see `self.analyses`) and calls `start_batch`.
        """
        mode = ExplanationMode(mode)
        analyses = await self.analyze_pages(pages, token)

        if token.cancelled:
            self._status('cancelled')
            self._set_state(BatchState.CANCELLED)
            return BatchResult(state=BatchState.CANCELLED, mode=mode)

        if manual_selection:
            self._set_state(BatchState.AWAITING_USER_SELECTION)
            return BatchResult(state=BatchState.AWAITING_USER_SELECTION, mode=mode)

        selections = [s for analysis in analyses for s in analysis.to_selections()]
        return await self.start_batch(selections, pages, mode, token, guidelines=guidelines)

    async def retry_one(
        self,
        record: ExplanationRecord,
        pages: List[PageImage],
        guidelines: str = ""
    ) -> ExplanationRecord:
        """
        Regenerate one record. Retries are free: quota is never touched.

        Raises:
            ValueError: If the record is still loading
        """
        if record.is_loading:
            raise ValueError(f"Record {record.id} is still loading")

        page = next((p for p in pages if p.page_number == record.page_number), None)
        record.is_loading = True
        record.is_error = False
        record.markdown = STATUS_MESSAGES['placeholder']
        self._emit('on_record_updated', record)

        await self._generate_record(record, page, None, guidelines)
        return record
