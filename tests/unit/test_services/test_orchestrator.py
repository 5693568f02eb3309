"""
Unit tests for services.orchestrator module.
"""
import asyncio

import pytest

from core.cancellation import CancellationToken
from core.exceptions import GenerationError, QuotaAccountingError, QuotaExceededError
from core.models import (
    BatchState, Bbox, ChargeResult, DetectedProblem, ErrorKind, ExplanationMode,
    GenerationResult, PageImage, ProblemType, UserSelection
)
from detection.detector import RegionDetector
from services.orchestrator import BatchCallbacks, BatchOrchestrator, sort_selections


class FakeGenerator:
    """Generator that fails on chosen call numbers (1-based)."""

    def __init__(self, fail_on=()):
        self.fail_on = set(fail_on)
        self.generate_calls = []
        self.recognize_calls = 0

    async def recognize_region(self, image, bbox, token=None):
        self.recognize_calls += 1
        return DetectedProblem(bbox=bbox, problem_type=ProblemType.FREE_RESPONSE,
                               problem_body=f"recognized {self.recognize_calls}")

    async def generate_explanation(self, problem_text, mode, guidelines="", token=None):
        self.generate_calls.append(problem_text)
        if len(self.generate_calls) in self.fail_on:
            raise GenerationError(ErrorKind.OTHER, "boom")
        return GenerationResult(markdown=f"Explanation of {problem_text}.",
                                core_concepts=['Algebra'], difficulty=2)


class FakeLedger:
    """In-memory quota ledger recording every call."""

    def __init__(self, limit=10, used=0, refund_error=None):
        self.limit = limit
        self.used = used
        self.refund_error = refund_error
        self.charges = []
        self.refunds = []

    def remaining(self, mode):
        if self.limit is None:
            return None
        return self.limit - self.used

    def charge(self, mode, count):
        self.charges.append(count)
        if self.limit is not None and self.used + count > self.limit:
            return ChargeResult(ok=False, remaining=self.limit - self.used)
        self.used += count
        return ChargeResult(ok=True, remaining=self.remaining(mode))

    def refund(self, mode, count):
        if self.refund_error:
            raise self.refund_error
        self.refunds.append(count)
        self.used = max(0, self.used - count)


class EmptyDetector:
    def detect(self, image):
        return []


def selections(count, page_number=1):
    step = 1.0 / (count + 1)
    return [
        UserSelection(page_number=page_number,
                      bbox=Bbox(0.1, i * step, 0.9, i * step + step / 2),
                      initial_text=f"problem {i}")
        for i in range(count)
    ]


@pytest.fixture
def pages(blank_page):
    return [PageImage(page_number=1, image=blank_page), PageImage(page_number=2, image=blank_page.copy())]


def make_orchestrator(generator=None, ledger=None, callbacks=None, detector=None):
    return BatchOrchestrator(
        generator or FakeGenerator(),
        ledger or FakeLedger(),
        detector=detector or EmptyDetector(),
        callbacks=callbacks
    )


def start(orchestrator, items, pages, mode=ExplanationMode.FAST, token=None):
    return asyncio.run(orchestrator.start_batch(items, pages, mode, token or CancellationToken()))


class TestSortSelections:
    """Tests for sort_selections."""

    def test_page_then_top_to_bottom(self):
        a = UserSelection(2, Bbox(0, 0.1, 1, 0.2))
        b = UserSelection(1, Bbox(0, 0.5, 1, 0.6))
        c = UserSelection(1, Bbox(0, 0.2, 1, 0.3))

        assert sort_selections([a, b, c]) == [c, b, a]


class TestQuotaCheck:
    """Tests for the upfront quota check."""

    def test_exceeding_quota_fails_without_side_effects(self, pages):
        """Test 5 selections against 3 remaining: nothing charged, no records."""
        generator = FakeGenerator()
        ledger = FakeLedger(limit=3)
        created, errors, statuses = [], [], []
        callbacks = BatchCallbacks(on_record_created=created.append,
                                   on_error=errors.append, on_status=statuses.append)
        orchestrator = make_orchestrator(generator, ledger, callbacks)

        result = start(orchestrator, selections(5), pages)

        assert result.state == BatchState.FAILED
        assert result.charged == 0
        assert result.records == []
        assert created == []
        assert ledger.used == 0
        assert ledger.charges == []
        assert generator.generate_calls == []
        assert isinstance(errors[0], QuotaExceededError)
        assert errors[0].remaining == 3
        assert '3 more' in result.error
        assert result.error in statuses

    def test_failed_atomic_charge(self, pages):
        """Test a charge rejected by the ledger is treated as quota exceeded."""
        class RacingLedger(FakeLedger):
            def remaining(self, mode):
                return 10

        ledger = RacingLedger(limit=1)
        orchestrator = make_orchestrator(ledger=ledger)

        with pytest.raises(QuotaExceededError):
            orchestrator.prepare_batch(selections(2), pages, ExplanationMode.FAST, CancellationToken())

        assert orchestrator.records == []

    def test_unlimited_ledger(self, pages):
        ledger = FakeLedger(limit=None)

        result = start(make_orchestrator(ledger=ledger), selections(4), pages)

        assert result.state == BatchState.COMPLETED
        assert result.completed == 4

    def test_empty_selection(self, pages):
        ledger = FakeLedger()

        result = start(make_orchestrator(ledger=ledger), [], pages)

        assert result.state == BatchState.COMPLETED
        assert ledger.charges == []

    def test_already_cancelled_token_charges_nothing(self, pages):
        ledger = FakeLedger()
        token = CancellationToken()
        token.cancel()

        result = start(make_orchestrator(ledger=ledger), selections(2), pages, token=token)

        assert result.state == BatchState.CANCELLED
        assert ledger.charges == []


class TestGeneration:
    """Tests for batch generation and refunds."""

    def test_all_succeed(self, pages):
        ledger = FakeLedger()
        states = []
        orchestrator = make_orchestrator(
            ledger=ledger, callbacks=BatchCallbacks(on_batch_state_changed=states.append)
        )

        result = start(orchestrator, selections(3), pages, mode=ExplanationMode.STANDARD)

        assert result.state == BatchState.COMPLETED
        assert (result.charged, result.completed, result.refunded) == (3, 3, 0)
        assert ledger.charges == [3]
        assert ledger.refunds == []
        assert states == [BatchState.CHARGING, BatchState.GENERATING, BatchState.COMPLETED]
        assert all(r.is_success for r in result.records)
        assert result.records[0].markdown == 'Explanation of problem 0.'
        assert result.records[0].core_concepts == ['Algebra']
        assert result.records[0].mode == ExplanationMode.STANDARD

    def test_partial_failure_refunds_once(self, pages):
        """Test 4 items with the 3rd failing: one refund of 1."""
        generator = FakeGenerator(fail_on={3})
        ledger = FakeLedger()

        result = start(make_orchestrator(generator, ledger), selections(4), pages)

        assert result.state == BatchState.COMPLETED
        assert result.completed == 3
        assert result.failed_count == 1
        assert result.records[2].is_error
        assert not result.records[2].is_loading
        assert ledger.refunds == [1]
        assert ledger.used == 3
        assert len(generator.generate_calls) == 4

    def test_cancel_mid_batch(self, pages):
        """Test cancelling after the 4th of 10 items refunds 6 and drops the rest."""
        generator = FakeGenerator()
        ledger = FakeLedger(limit=20)
        token = CancellationToken()
        dropped = []

        def on_updated(record):
            if record.problem_number == 4 and record.is_success:
                token.cancel()

        callbacks = BatchCallbacks(on_record_updated=on_updated, on_record_dropped=dropped.append)
        orchestrator = make_orchestrator(generator, ledger, callbacks)

        result = start(orchestrator, selections(10), pages, token=token)

        assert result.state == BatchState.CANCELLED
        assert (result.charged, result.completed, result.refunded) == (10, 4, 6)
        assert ledger.refunds == [6]
        assert ledger.used == 4
        assert len(generator.generate_calls) == 4
        assert [r.problem_number for r in result.records] == [1, 2, 3, 4]
        assert [r.problem_number for r in dropped] == [5, 6, 7, 8, 9, 10]
        assert len(orchestrator.records) == 4

    def test_task_cancelled_mid_batch(self, pages):
        """Test cancelling the task while the 2nd of 4 items hangs drops the rest and refunds 3."""
        class HangingGenerator(FakeGenerator):
            async def generate_explanation(self, problem_text, mode, guidelines="", token=None):
                if len(self.generate_calls) == 1:
                    self.generate_calls.append(problem_text)
                    await asyncio.Event().wait()
                return await super().generate_explanation(problem_text, mode, guidelines, token)

        ledger = FakeLedger()
        token = CancellationToken()
        dropped = []
        orchestrator = make_orchestrator(
            HangingGenerator(), ledger, BatchCallbacks(on_record_dropped=dropped.append)
        )

        async def run():
            task = asyncio.create_task(
                orchestrator.start_batch(selections(4), pages, ExplanationMode.FAST, token)
            )
            await asyncio.sleep(0.05)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

        asyncio.run(run())

        assert orchestrator.state == BatchState.CANCELLED
        assert token.cancelled
        assert not any(r.is_loading for r in orchestrator.records)
        assert [r.problem_number for r in orchestrator.records] == [1]
        assert [r.problem_number for r in dropped] == [2, 3, 4]
        assert ledger.refunds == [3]
        assert ledger.used == 1

    @pytest.mark.parametrize("fail_on", [set(), {1}, {2, 4}, {1, 2, 3, 4, 5}])
    def test_accounting_balances(self, pages, fail_on):
        ledger = FakeLedger()

        result = start(make_orchestrator(FakeGenerator(fail_on), ledger), selections(5), pages)

        assert result.charged == result.completed + result.refunded
        assert ledger.used == result.completed

    def test_refund_failure_flags_accounting_error(self, pages):
        ledger = FakeLedger(refund_error=RuntimeError("db down"))
        errors = []
        orchestrator = make_orchestrator(
            FakeGenerator(fail_on={1}), ledger, BatchCallbacks(on_error=errors.append)
        )

        result = start(orchestrator, selections(2), pages)

        assert result.state == BatchState.COMPLETED
        assert result.refunded == 0
        assert result.accounting_error
        assert isinstance(errors[0], QuotaAccountingError)

    def test_problem_numbers_follow_page_order(self, pages):
        items = [
            UserSelection(2, Bbox(0.1, 0.1, 0.9, 0.2), initial_text="p2 top"),
            UserSelection(1, Bbox(0.1, 0.6, 0.9, 0.7), initial_text="p1 bottom"),
            UserSelection(1, Bbox(0.1, 0.1, 0.9, 0.2), initial_text="p1 top"),
        ]
        generator = FakeGenerator()

        result = start(make_orchestrator(generator), items, pages)

        assert generator.generate_calls == ["p1 top", "p1 bottom", "p2 top"]
        assert [(r.page_number, r.problem_number) for r in result.records] == [(1, 1), (1, 2), (2, 3)]

    def test_placeholders_created_before_generation(self, pages):
        seen = []
        orchestrator = make_orchestrator(callbacks=BatchCallbacks(on_record_created=seen.append))

        run = orchestrator.prepare_batch(selections(2), pages, ExplanationMode.FAST, CancellationToken())

        assert [r.is_loading for r in seen] == [True, True]
        assert run.result.charged == 2
        assert seen[0].image

    def test_missing_text_is_recognized(self, pages):
        generator = FakeGenerator()
        items = [UserSelection(1, Bbox(0.1, 0.1, 0.9, 0.2))]

        result = start(make_orchestrator(generator), items, pages)

        assert generator.recognize_calls == 1
        assert result.records[0].original_problem_text == "recognized 1"

    def test_initial_text_skips_recognition(self, pages):
        generator = FakeGenerator()

        start(make_orchestrator(generator), selections(2), pages)

        assert generator.recognize_calls == 0


class TestRetryOne:
    """Tests for BatchOrchestrator.retry_one."""

    def test_retry_is_free(self, pages):
        generator = FakeGenerator(fail_on={1})
        ledger = FakeLedger()
        orchestrator = make_orchestrator(generator, ledger)
        result = start(orchestrator, selections(1), pages)
        record = result.records[0]
        assert record.is_error

        asyncio.run(orchestrator.retry_one(record, pages))

        assert record.is_success
        assert ledger.charges == [1]
        assert ledger.refunds == [1]

    def test_loading_record_rejected(self, pages):
        orchestrator = make_orchestrator()
        run = orchestrator.prepare_batch(selections(1), pages, ExplanationMode.FAST, CancellationToken())

        with pytest.raises(ValueError):
            asyncio.run(orchestrator.retry_one(run.items[0][0], pages))

    def test_get_record(self, pages):
        orchestrator = make_orchestrator()
        run = orchestrator.prepare_batch(selections(2), pages, ExplanationMode.FAST, CancellationToken())

        assert orchestrator.get_record(run.items[1][0].id) is run.items[1][0]
        assert orchestrator.get_record(999) is None


class TestRun:
    """Tests for analysis and the full run."""

    def test_analyze_with_real_detector(self, two_block_page):
        generator = FakeGenerator()
        detected = []
        orchestrator = make_orchestrator(
            generator,
            detector=RegionDetector(),
            callbacks=BatchCallbacks(on_regions_detected=lambda n, b: detected.append((n, len(b))))
        )

        analyses = asyncio.run(orchestrator.analyze_pages(
            [PageImage(1, two_block_page)], CancellationToken()
        ))

        assert detected == [(1, 2)]
        assert len(analyses[0].problems) == 2
        assert generator.recognize_calls == 2

    def test_recognition_failure_skipped(self, two_block_page):
        class FailingRecognizer(FakeGenerator):
            async def recognize_region(self, image, bbox, token=None):
                raise GenerationError(ErrorKind.OTHER, "unreadable")

        orchestrator = make_orchestrator(FailingRecognizer(), detector=RegionDetector())

        analyses = asyncio.run(orchestrator.analyze_pages(
            [PageImage(1, two_block_page)], CancellationToken()
        ))

        assert len(analyses[0].regions) == 2
        assert analyses[0].problems == []

    def test_analyze_without_ledger(self, two_block_page):
        orchestrator = BatchOrchestrator(FakeGenerator(), detector=RegionDetector())

        analyses = asyncio.run(orchestrator.analyze_pages(
            [PageImage(1, two_block_page)], CancellationToken()
        ))

        assert len(analyses[0].problems) == 2

    def test_charging_requires_ledger(self, pages):
        orchestrator = BatchOrchestrator(FakeGenerator(), detector=EmptyDetector())

        with pytest.raises(RuntimeError):
            orchestrator.prepare_batch(selections(1), pages, ExplanationMode.FAST, CancellationToken())

        assert orchestrator.records == []

    def test_manual_selection_stops(self, two_block_page):
        ledger = FakeLedger()
        orchestrator = make_orchestrator(ledger=ledger, detector=RegionDetector())

        result = asyncio.run(orchestrator.run(
            [PageImage(1, two_block_page)], ExplanationMode.FAST, CancellationToken(), manual_selection=True
        ))

        assert result.state == BatchState.AWAITING_USER_SELECTION
        assert ledger.charges == []
        assert len(orchestrator.analyses[0].problems) == 2

    def test_full_run(self, two_block_page):
        generator = FakeGenerator()
        ledger = FakeLedger()
        orchestrator = make_orchestrator(generator, ledger, detector=RegionDetector())

        result = asyncio.run(orchestrator.run(
            [PageImage(1, two_block_page)], ExplanationMode.FAST, CancellationToken()
        ))

        assert result.state == BatchState.COMPLETED
        assert result.completed == 2
        assert ledger.charges == [2]
        assert generator.recognize_calls == 2
