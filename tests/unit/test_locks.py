"""Unit tests for per-id locks."""

from __future__ import annotations

import threading

from flowfi_automation.engine.locks import KeyedLocks


def test_entries_exist_only_while_held() -> None:
    locks = KeyedLocks()

    with locks.hold("wf_1") as acquired:
        assert acquired
        assert locks.locked("wf_1")
        assert not locks.locked("wf_2")
        assert len(locks) == 1

    assert len(locks) == 0
    assert not locks.locked("wf_1")


def test_non_blocking_hold_reports_contention() -> None:
    locks = KeyedLocks()
    held = threading.Event()
    release = threading.Event()

    def holder() -> None:
        with locks.hold("wf_1"):
            held.set()
            release.wait(timeout=5.0)

    worker = threading.Thread(target=holder)
    worker.start()
    try:
        assert held.wait(timeout=5.0)
        with locks.hold("wf_1", blocking=False) as acquired:
            assert not acquired
        with locks.hold("wf_2", blocking=False) as acquired:
            assert acquired
    finally:
        release.set()
        worker.join(timeout=5.0)

    assert len(locks) == 0


def test_waiters_share_the_entry_until_the_last_leaves() -> None:
    locks = KeyedLocks()
    order: list[str] = []
    first_in = threading.Event()
    release = threading.Event()

    def first() -> None:
        with locks.hold("prop_1"):
            first_in.set()
            release.wait(timeout=5.0)
            order.append("first")

    def second() -> None:
        with locks.hold("prop_1"):
            order.append("second")

    a = threading.Thread(target=first)
    a.start()
    assert first_in.wait(timeout=5.0)
    b = threading.Thread(target=second)
    b.start()
    release.set()
    a.join(timeout=5.0)
    b.join(timeout=5.0)

    assert order == ["first", "second"]
    assert len(locks) == 0
