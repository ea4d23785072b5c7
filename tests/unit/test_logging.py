import logging

from core.logging import SyncContextFilter, log_event, set_sync_id, set_sync_phase


def make_record() -> logging.LogRecord:
    return logging.LogRecord("cdc.test", logging.INFO, __file__, 1, "stream.open", None, None)


def test_filter_stamps_sync_id_and_phase():
    set_sync_id("pg-main-1")
    set_sync_phase("streaming")
    record = make_record()

    assert SyncContextFilter().filter(record)
    assert record.sync_id == "pg-main-1"
    assert record.sync_phase == "streaming"


def test_new_sync_id_clears_previous_phase():
    set_sync_phase("done")
    set_sync_id("pg-main-2")
    record = make_record()

    SyncContextFilter().filter(record)
    assert record.sync_phase == "-"


def test_log_event_emits_fields_as_record_attributes(caplog):
    logger = logging.getLogger("cdc.test")
    with caplog.at_level(logging.INFO, logger="cdc.test"):
        log_event(logger, "stream.open", resume_from=7, stop_at=None)

    record = caplog.records[-1]
    assert record.getMessage() == "stream.open"
    assert record.event == "stream.open"
    assert record.resume_from == 7
    assert record.stop_at is None
