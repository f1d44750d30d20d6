"""
Unit tests for the batch ledger state machine.
"""

import threading
import time

import pytest

from medallion.batch import BatchTracker, CancellationToken, InMemoryBatchLedger
from medallion.core.errors import BatchCancelled, BatchNotFound, BatchStateError, Timeout
from medallion.core.models import Batch, LayerTransition, LoadReport
from medallion.utils.validation import InvalidIdentifier


def new_batch(batch_id="orders_001"):
    return Batch(batch_id=batch_id, source_id="orders_csv")


@pytest.fixture
def tracker():
    return BatchTracker(InMemoryBatchLedger(), timeout=1.0)


class TestBatchTracker:
    """Tests for BatchTracker"""

    def test_register_and_get(self, tracker):
        """Test registering a batch"""
        assert tracker.register(new_batch()) == "orders_001"

        batch = tracker.get("orders_001")
        assert batch.status == "pending"
        assert tracker.status("orders_001") == "pending"

    def test_duplicate_registration_rejected(self, tracker):
        """Test the same batch id cannot be registered twice"""
        tracker.register(new_batch())

        with pytest.raises(BatchStateError, match="already registered"):
            tracker.register(new_batch())

    def test_register_requires_pending(self, tracker):
        """Test new batches must start pending"""
        with pytest.raises(BatchStateError):
            tracker.register(Batch(batch_id="b1", source_id="s", status="completed"))

    def test_register_validates_ids(self, tracker):
        """Test malformed ids are rejected before touching the ledger"""
        with pytest.raises(InvalidIdentifier):
            tracker.register(Batch(batch_id="bad id!", source_id="orders_csv"))

    def test_unknown_batch(self, tracker):
        """Test unknown ids raise BatchNotFound"""
        with pytest.raises(BatchNotFound, match="Unknown batch: nope"):
            tracker.get("nope")
        with pytest.raises(BatchNotFound):
            tracker.mark_in_progress("nope")

    def test_happy_path(self, tracker):
        """Test pending -> in_progress -> completed"""
        tracker.register(new_batch())

        started = tracker.mark_in_progress("orders_001")
        done = tracker.mark_completed("orders_001", LoadReport(batch_id="orders_001", read=3, written=3))

        assert started.status == "in_progress"
        assert started.attempts == 1
        assert done.status == "completed"
        assert done.report["written"] == 3

    def test_failure_records_reason(self, tracker):
        """Test in_progress -> failed keeps the reason"""
        tracker.register(new_batch())
        tracker.mark_in_progress("orders_001")

        failed = tracker.mark_failed("orders_001", "StorageError: disk full")

        assert failed.status == "failed"
        assert failed.failure_reason == "StorageError: disk full"

    @pytest.mark.parametrize("operation", ["mark_completed", "mark_failed"])
    def test_pending_cannot_finish(self, tracker, operation):
        """Test a batch must be in progress before it finishes"""
        tracker.register(new_batch())

        with pytest.raises(BatchStateError):
            if operation == "mark_failed":
                tracker.mark_failed("orders_001", "x")
            else:
                tracker.mark_completed("orders_001")

    def test_completed_is_terminal(self, tracker):
        """Test nothing leaves completed"""
        tracker.register(new_batch())
        tracker.mark_in_progress("orders_001")
        tracker.mark_completed("orders_001")

        with pytest.raises(BatchStateError):
            tracker.mark_in_progress("orders_001")
        with pytest.raises(BatchStateError):
            tracker.mark_failed("orders_001", "late")
        with pytest.raises(BatchStateError):
            tracker.retry("orders_001")

    def test_in_progress_cannot_restart(self, tracker):
        """Test mark_in_progress only applies to pending batches"""
        tracker.register(new_batch())
        tracker.mark_in_progress("orders_001")

        with pytest.raises(BatchStateError):
            tracker.mark_in_progress("orders_001")

    def test_retry_releases_output_then_resets(self, tracker):
        """Test failed -> in_progress via retry, clearing checkpoint and reason"""
        released = []
        tracker.register(new_batch())
        tracker.mark_in_progress("orders_001")
        tracker.checkpoint("orders_001", "silver", LoadReport(batch_id="orders_001", read=4))
        tracker.mark_failed("orders_001", "boom")

        batch = tracker.retry("orders_001", release_output=released.append)

        assert released == ["orders_001"]
        assert batch.status == "in_progress"
        assert batch.attempts == 2
        assert batch.checkpoint is None
        assert batch.failure_reason is None
        assert batch.report is None

    def test_retry_not_applied_when_release_fails(self, tracker):
        """Test a failing release leaves the batch failed"""
        tracker.register(new_batch())
        tracker.mark_in_progress("orders_001")
        tracker.mark_failed("orders_001", "boom")

        def release(batch_id):
            raise RuntimeError("cannot purge")

        with pytest.raises(RuntimeError):
            tracker.retry("orders_001", release_output=release)

        assert tracker.status("orders_001") == "failed"

    def test_retry_requires_failed(self, tracker):
        """Test retry is only for failed batches"""
        tracker.register(new_batch())

        with pytest.raises(BatchStateError, match="Only failed"):
            tracker.retry("orders_001")

    def test_checkpoint_keeps_progress(self, tracker):
        """Test checkpoint stores layer and progress"""
        tracker.register(new_batch())
        tracker.mark_in_progress("orders_001")

        batch = tracker.checkpoint("orders_001", "silver", LoadReport(batch_id="orders_001", read=5, normalized=4))

        assert batch.checkpoint == "silver"
        assert LoadReport.model_validate(batch.report).normalized == 4
        assert batch.status == "in_progress"

    def test_checkpoint_requires_in_progress(self, tracker):
        """Test checkpoints only apply to running batches"""
        tracker.register(new_batch())

        with pytest.raises(BatchStateError):
            tracker.checkpoint("orders_001", "silver")

    def test_record_transition_appends_lineage(self, tracker):
        """Test lineage entries accumulate"""
        tracker.register(new_batch())
        tracker.mark_in_progress("orders_001")

        tracker.record_transition("orders_001", LayerTransition(
            source_layer="bronze", target_layer="silver", rows_read=5, rows_written=4))
        batch = tracker.record_transition("orders_001", LayerTransition(
            source_layer="silver", target_layer="gold", rows_read=4, rows_written=4))

        assert [(t.source_layer, t.target_layer) for t in batch.lineage] == [("bronze", "silver"), ("silver", "gold")]

    def test_list_batches_filters_by_status(self, tracker):
        """Test listing with and without a status filter"""
        for batch_id in ("b1", "b2", "b3"):
            tracker.register(new_batch(batch_id))
        tracker.mark_in_progress("b2")

        assert [b.batch_id for b in tracker.list_batches()] == ["b1", "b2", "b3"]
        assert [b.batch_id for b in tracker.list_batches("pending")] == ["b1", "b3"]
        assert [b.batch_id for b in tracker.list_batches("in_progress")] == ["b2"]

    def test_ledger_returns_copies(self, tracker):
        """Test callers cannot mutate ledger state through returned objects"""
        tracker.register(new_batch())

        batch = tracker.get("orders_001")
        batch.lineage.append(LayerTransition(source_layer="bronze", target_layer="silver"))

        assert tracker.get("orders_001").lineage == []

    def test_only_one_concurrent_claim_wins(self, tracker):
        """Test that racing mark_in_progress calls admit exactly one"""
        tracker.register(new_batch())
        outcomes = []
        barrier = threading.Barrier(6)

        def claim():
            barrier.wait()
            try:
                tracker.mark_in_progress("orders_001")
                outcomes.append("won")
            except BatchStateError:
                outcomes.append("lost")

        threads = [threading.Thread(target=claim) for _ in range(6)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert outcomes.count("won") == 1
        assert tracker.get("orders_001").attempts == 1

    def test_tracker_lock_timeout(self):
        """Test a stuck tracker lock surfaces as Timeout"""
        tracker = BatchTracker(timeout=0.05)
        tracker._lock.acquire()
        try:
            with pytest.raises(Timeout):
                tracker.register(new_batch())
        finally:
            tracker._lock.release()


class TestBatchClaims:
    """Tests for owner claims and leases"""

    def test_claim_pending(self, tracker):
        """Test claiming a pending batch starts it under the owner"""
        tracker.register(new_batch())

        batch = tracker.claim("orders_001", "host-a:1")

        assert batch.status == "in_progress"
        assert batch.owner == "host-a:1"
        assert batch.attempts == 1
        assert batch.lease_expires_at > batch.updated_at

    def test_second_owner_rejected_while_lease_live(self, tracker):
        """Test another runner cannot take a batch someone is loading"""
        tracker.register(new_batch())
        tracker.claim("orders_001", "host-a:1")

        with pytest.raises(BatchStateError, match="being loaded by host-a:1"):
            tracker.claim("orders_001", "host-b:2")

        assert tracker.get("orders_001").owner == "host-a:1"

    def test_same_owner_can_reclaim(self, tracker):
        """Test the holder re-claiming keeps the attempt count"""
        tracker.register(new_batch())
        tracker.claim("orders_001", "host-a:1")

        batch = tracker.claim("orders_001", "host-a:1")

        assert batch.owner == "host-a:1"
        assert batch.attempts == 1

    def test_lapsed_lease_taken_over(self):
        """Test a crashed runner's batch can be claimed once its lease lapses"""
        tracker = BatchTracker(InMemoryBatchLedger(), timeout=1.0, lease_timeout=0.01)
        tracker.register(new_batch())
        tracker.claim("orders_001", "host-a:1")
        time.sleep(0.05)

        batch = tracker.claim("orders_001", "host-b:2")

        assert batch.owner == "host-b:2"
        with pytest.raises(BatchStateError, match="held by host-b:2"):
            tracker.checkpoint("orders_001", "silver", owner="host-a:1")

    def test_released_batch_claimable(self, tracker):
        """Test release clears the owner so the next run can resume"""
        tracker.register(new_batch())
        tracker.claim("orders_001", "host-a:1")

        released = tracker.release("orders_001", "host-a:1")
        batch = tracker.claim("orders_001", "host-b:2")

        assert released.status == "in_progress"
        assert released.owner is None
        assert released.lease_expires_at is None
        assert batch.owner == "host-b:2"

    def test_release_by_other_owner_ignored(self, tracker):
        """Test only the holder can release"""
        tracker.register(new_batch())
        tracker.claim("orders_001", "host-a:1")

        assert tracker.release("orders_001", "host-b:2").owner == "host-a:1"

    def test_claim_finished_batch_rejected(self, tracker):
        """Test completed and failed batches cannot be claimed"""
        tracker.register(new_batch())
        tracker.claim("orders_001", "host-a:1")
        tracker.mark_failed("orders_001", "boom", owner="host-a:1")

        with pytest.raises(BatchStateError, match="while failed"):
            tracker.claim("orders_001", "host-a:1")

    def test_wrong_owner_cannot_move_batch(self, tracker):
        """Test checkpoint, lineage and finishing check the owner"""
        tracker.register(new_batch())
        tracker.claim("orders_001", "host-a:1")

        with pytest.raises(BatchStateError):
            tracker.checkpoint("orders_001", "silver", owner="host-b:2")
        with pytest.raises(BatchStateError):
            tracker.record_transition("orders_001", LayerTransition(
                source_layer="bronze", target_layer="silver"), owner="host-b:2")
        with pytest.raises(BatchStateError):
            tracker.mark_completed("orders_001", owner="host-b:2")
        with pytest.raises(BatchStateError):
            tracker.mark_failed("orders_001", "x")

        assert tracker.status("orders_001") == "in_progress"

    def test_checkpoint_renews_lease(self, tracker):
        """Test checkpoints push the lease out"""
        tracker.register(new_batch())
        claimed = tracker.claim("orders_001", "host-a:1")
        time.sleep(0.01)

        batch = tracker.checkpoint("orders_001", "silver", owner="host-a:1")

        assert batch.lease_expires_at > claimed.lease_expires_at

    def test_finishing_clears_owner(self, tracker):
        """Test completed batches carry no owner or lease"""
        tracker.register(new_batch())
        tracker.claim("orders_001", "host-a:1")

        batch = tracker.mark_completed("orders_001", owner="host-a:1")

        assert batch.status == "completed"
        assert batch.owner is None
        assert batch.lease_expires_at is None

    def test_only_one_concurrent_owner_wins(self, tracker):
        """Test racing claims by different runners admit exactly one"""
        tracker.register(new_batch())
        outcomes = []
        barrier = threading.Barrier(4)

        def claim(owner):
            barrier.wait()
            try:
                tracker.claim("orders_001", owner)
                outcomes.append(owner)
            except BatchStateError:
                outcomes.append(None)

        threads = [threading.Thread(target=claim, args=(f"host-{i}:1",)) for i in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        winners = [o for o in outcomes if o is not None]
        assert len(winners) == 1
        assert tracker.get("orders_001").owner == winners[0]


class TestInMemoryBatchLedger:
    """Tests for ledger check-and-set"""

    def test_save_checks_expected_status(self):
        """Test stale writers are rejected"""
        ledger = InMemoryBatchLedger()
        batch = new_batch()
        ledger.save(batch, expected_status=None)

        with pytest.raises(BatchStateError, match="changed concurrently"):
            ledger.save(batch.model_copy(update={"status": "in_progress"}), expected_status="failed")

    def test_save_checks_expected_owner(self):
        """Test a writer holding a stale owner is rejected"""
        ledger = InMemoryBatchLedger()
        batch = new_batch().model_copy(update={"status": "in_progress", "owner": "host-b:2"})
        ledger.save(batch, expected_status=None)

        with pytest.raises(BatchStateError, match="owned by host-b:2"):
            ledger.save(batch.model_copy(update={"status": "failed"}), "in_progress", expected_owner="host-a:1")

        ledger.save(batch.model_copy(update={"status": "failed"}), "in_progress", expected_owner="host-b:2")
        assert ledger.load("orders_001").status == "failed"

    def test_save_missing_entry(self):
        """Test updating an unregistered batch fails"""
        with pytest.raises(BatchStateError):
            InMemoryBatchLedger().save(new_batch(), expected_status="pending")


class TestCancellationToken:
    """Tests for CancellationToken"""

    def test_not_cancelled_by_default(self):
        """Test a fresh token passes"""
        token = CancellationToken()

        token.raise_if_cancelled("bronze -> silver")
        assert token.cancelled is False

    def test_cancel(self):
        """Test a cancelled token raises with its reason"""
        token = CancellationToken()
        token.cancel("operator request")

        with pytest.raises(BatchCancelled, match="operator request before silver -> gold"):
            token.raise_if_cancelled("silver -> gold")
