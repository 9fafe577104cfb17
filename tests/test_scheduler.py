# tests/test_scheduler.py
import threading
from datetime import timedelta

from conftest import vote_all
from zbory.enums import DocumentStatus, SheetStatus
from zbory.signing.scheduler import SyncScheduler


def test_run_once_survives_failing_cycle(caplog):
    def broken():
        raise RuntimeError("boom")

    scheduler = SyncScheduler(broken, interval=60)
    scheduler.run_once()
    assert scheduler.cycles_run == 1
    assert "Signing sync cycle failed" in caplog.text


def test_start_and_stop():
    ran = threading.Event()
    scheduler = SyncScheduler(ran.set, interval=60)
    scheduler.start()
    try:
        assert ran.wait(5)
        assert scheduler.running
        # second start is a no-op
        worker = scheduler.worker
        scheduler.start()
        assert scheduler.worker is worker
    finally:
        scheduler.stop(timeout=5)
    assert not scheduler.running
    assert scheduler.cycles_run >= 1


def test_run_once_pushes_an_app_context(app):
    from flask import current_app
    seen = []
    scheduler = SyncScheduler(lambda: seen.append(current_app.name), interval=60, app=app)
    scheduler.run_once()
    assert seen == [app.name]


def test_sync_cycle_closes_and_signs(services, opened, store, monkeypatch, no_retry_sleep):
    vote_all(services, opened.tokens[0], opened.questions)
    later = opened.sheets[0].expires_at + timedelta(seconds=1)
    monkeypatch.setattr(services.voting, '_now', lambda: later)

    services.run_sync_cycle()
    assert store.get_sheet(opened.sheet_ids[0]).status == SheetStatus.CLOSED
    assert store.get_sheet(opened.sheet_ids[1]).status == SheetStatus.EXPIRED

    for _ in range(3):
        services.run_sync_cycle()
    assert store.get_document_for_sheet(opened.sheet_ids[0]).status == DocumentStatus.ORGANIZER_SIGNED
