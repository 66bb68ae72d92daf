"""作业锁测试：同一 key 串行，不同 key 互不阻塞，空闲后回收。"""

from __future__ import annotations

import threading
import time

from broker.application.locks import JobLockRegistry


def test_same_key_is_serialized() -> None:
    locks = JobLockRegistry()
    active = 0
    peak = 0
    guard = threading.Lock()

    def worker() -> None:
        nonlocal active, peak
        with locks.hold("req-1"):
            with guard:
                active += 1
                peak = max(peak, active)
            time.sleep(0.01)
            with guard:
                active -= 1

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert peak == 1
    assert locks.active_keys() == []


def test_different_keys_do_not_block() -> None:
    locks = JobLockRegistry()
    entered = threading.Event()

    def other() -> None:
        with locks.hold("req-2"):
            entered.set()

    with locks.hold("req-1"):
        thread = threading.Thread(target=other)
        thread.start()
        assert entered.wait(timeout=2)
        thread.join()
        assert locks.active_keys() == ["req-1"]


def test_entry_released_after_exception() -> None:
    locks = JobLockRegistry()
    try:
        with locks.hold("req-1"):
            raise RuntimeError("boom")
    except RuntimeError:
        pass
    assert locks.active_keys() == []
