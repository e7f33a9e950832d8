from conftest import NOW_MS, get_record, put_record
from metering_pipeline.reclaimer import StuckRecordReclaimer
from metering_pipeline.store import UsageRecordStore

THIRTY_MINUTES_MS = 30 * 60 * 1000


def test_claim_older_than_timeout_is_reset(table, store, logger, clock):
    put_record(table, created=1, pending="processing", processing_started=NOW_MS - THIRTY_MINUTES_MS - 1)

    assert StuckRecordReclaimer(store, logger, clock=clock).run() == 1

    item = get_record(table, created=1)
    assert item["metering_pending"] == "true"
    assert item["status"] == "timeout_reset"
    assert "processing_started" not in item


def test_claim_is_reset_only_once_the_timeout_has_passed(table, store, logger, clock):
    claimed_at = NOW_MS
    put_record(table, created=1, pending="processing", processing_started=claimed_at)
    reclaimer = StuckRecordReclaimer(store, logger, clock=clock)

    clock.now_ms = claimed_at + THIRTY_MINUTES_MS - 1
    assert reclaimer.run() == 0
    assert get_record(table, created=1)["metering_pending"] == "processing"

    clock.now_ms = claimed_at + THIRTY_MINUTES_MS + 1
    assert reclaimer.run() == 1
    assert get_record(table, created=1)["metering_pending"] == "true"


def test_processing_without_start_time_is_reset(table, store, logger, clock):
    put_record(table, created=1, pending="processing")

    assert StuckRecordReclaimer(store, logger, clock=clock).run() == 1
    assert get_record(table, created=1)["metering_pending"] == "true"


def test_unrecognised_status_does_not_block_the_sweep(table, store, logger, clock):
    put_record(table, created=1, pending="processing", processing_started=0, status="queued")
    put_record(table, created=2, pending="processing", processing_started=0)

    assert StuckRecordReclaimer(store, logger, clock=clock).run() == 2
    assert get_record(table, created=1)["status"] == "timeout_reset"


def test_failed_records_are_left_for_operators(table, store, logger, clock):
    put_record(table, created=1, pending="processing", processing_started=0, status="failed")

    assert StuckRecordReclaimer(store, logger, clock=clock).run() == 0
    assert get_record(table, created=1)["status"] == "failed"


def test_pending_and_completed_records_are_untouched(table, store, logger, clock):
    put_record(table, created=1, pending="true")
    put_record(table, created=2, pending="false", status="completed")

    assert StuckRecordReclaimer(store, logger, clock=clock).run() == 0
    assert get_record(table, created=2)["status"] == "completed"


def test_errors_are_swallowed(table, logger, clock):
    broken = UsageRecordStore(table, "NoSuchIndex")
    assert StuckRecordReclaimer(broken, logger, clock=clock).run() == 0


def test_reset_failures_are_swallowed(table, store, logger, clock, monkeypatch):
    put_record(table, created=1, pending="processing", processing_started=0)
    put_record(table, created=2, pending="processing", processing_started=0)
    real_reset = store.reset_stuck

    def flaky_reset(record):
        if record.create_timestamp == 1:
            raise RuntimeError("table unavailable")
        return real_reset(record)

    monkeypatch.setattr(store, "reset_stuck", flaky_reset)

    assert StuckRecordReclaimer(store, logger, clock=clock).run() == 1
    assert get_record(table, created=2)["metering_pending"] == "true"
