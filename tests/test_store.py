import pytest

from conftest import INDEX_NAME, NOW_MS, SerializedTable, get_record, put_record
from metering_pipeline.exceptions import StoreQueryError
from metering_pipeline.fanout import fan_out
from metering_pipeline.model import MeteringPending, UsageRecord
from metering_pipeline.store import ClaimOutcome, UsageRecordStore


def load(store, state=MeteringPending.PENDING):
    records, _ = store.query(state)
    return records


def test_query_returns_only_records_in_requested_state(table, store):
    put_record(table, created=1)
    put_record(table, created=2, pending="processing", processing_started=NOW_MS)
    put_record(table, created=3, pending="false")

    assert [r.create_timestamp for r in load(store)] == [1]
    assert [r.create_timestamp for r in load(store, MeteringPending.PROCESSING)] == [2]


def test_query_respects_limit_and_returns_page_token(table, store):
    for ts in range(5):
        put_record(table, created=ts)

    records, token = store.query(MeteringPending.PENDING, limit=2)

    assert len(records) == 2
    assert token is not None


def test_query_failure_is_a_store_query_error(table):
    store = UsageRecordStore(table, "NoSuchIndex")
    with pytest.raises(StoreQueryError):
        store.query(MeteringPending.PENDING)


def test_same_record_can_only_be_claimed_once(table, store):
    put_record(table)
    first = load(store)[0]
    second = load(store)[0]

    assert store.claim(first, NOW_MS) is ClaimOutcome.CLAIMED
    assert store.claim(second, NOW_MS + 1) is ClaimOutcome.CONFLICT

    item = get_record(table)
    assert item["metering_pending"] == "processing"
    assert item["status"] == "processing"
    assert item["processing_started"] == NOW_MS


def test_rollback_returns_claim_to_pending(table, store):
    put_record(table)
    record = load(store)[0]
    store.claim(record, NOW_MS)

    assert store.rollback(record, "queue down", NOW_MS + 5)

    item = get_record(table)
    assert item["metering_pending"] == "true"
    assert item["status"] == "failed"
    assert item["error_message"] == "queue down"
    assert item["last_failed"] == NOW_MS + 5
    assert item["retry_count"] == 1
    assert "processing_started" not in item


def test_rollback_skips_records_no_longer_processing(table, store):
    put_record(table, pending="false", status="completed")
    record = UsageRecord.from_item(get_record(table))

    assert store.rollback(record, "late", NOW_MS) is False
    assert get_record(table)["metering_pending"] == "false"


def test_reset_stuck_marks_timeout_reset(table, store):
    put_record(table, pending="processing", processing_started=NOW_MS)
    record = load(store, MeteringPending.PROCESSING)[0]

    assert store.reset_stuck(record)

    item = get_record(table)
    assert item["metering_pending"] == "true"
    assert item["status"] == "timeout_reset"
    assert "processing_started" not in item


def test_mark_completed_is_terminal_state(table, store):
    put_record(table, pending="processing", processing_started=NOW_MS)

    assert store.mark_completed(("cust-1", 1000), NOW_MS + 10)

    item = get_record(table)
    assert item["metering_pending"] == "false"
    assert item["status"] == "completed"
    assert item["processed_timestamp"] == NOW_MS + 10
    assert "processing_started" not in item


def test_mark_completed_missing_record(table, store):
    assert store.mark_completed(("nobody", 1), NOW_MS) is False
    assert get_record(table, "nobody", 1) is None


def test_mark_failed_increments_retry_count_and_keeps_claim(table, store):
    put_record(table, pending="processing", processing_started=NOW_MS, retry_count=2)

    assert store.mark_failed(("cust-1", 1000), "InvalidUsageDimensionException: bad", NOW_MS + 1)
    assert store.mark_failed(("cust-1", 1000), "again", NOW_MS + 2)

    item = get_record(table)
    assert item["status"] == "failed"
    assert item["metering_pending"] == "processing"
    assert item["retry_count"] == 4
    assert item["error_message"] == "again"
    assert item["last_failed"] == NOW_MS + 2


def test_mark_failed_never_regresses_completed_record(table, store):
    put_record(table, pending="false", status="completed")

    assert store.mark_failed(("cust-1", 1000), "duplicate delivery", NOW_MS) is False

    item = get_record(table)
    assert item["status"] == "completed"
    assert "retry_count" not in item


def test_query_skips_malformed_items(table, store):
    put_record(table, customer="good", created=1)
    put_record(table, customer="odd", created=2, retry_count="many")

    assert [r.customer_identifier for r in load(store)] == ["good"]


def test_concurrent_claims_on_one_record_yield_one_winner(table, store):
    put_record(table)
    copies = [load(store)[0], load(store)[0]]
    racing = UsageRecordStore(SerializedTable(table), INDEX_NAME)

    outcomes = fan_out(lambda r: racing.claim(r, NOW_MS), copies, max_workers=2)

    assert all(o.ok for o in outcomes)
    assert sorted(o.value.value for o in outcomes) == ["claimed", "conflict"]
