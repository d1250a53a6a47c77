import threading
import time

from video_ingest.locks import SessionLocks


def test_hold_serializes_same_session() -> None:
    locks = SessionLocks()
    active = 0
    peak = 0
    guard = threading.Lock()

    def _work() -> None:
        nonlocal active, peak
        with locks.hold("s1"):
            with guard:
                active += 1
                peak = max(peak, active)
            time.sleep(0.01)
            with guard:
                active -= 1

    threads = [threading.Thread(target=_work) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert peak == 1
    assert locks.active_count() == 0


def test_different_sessions_do_not_block_each_other() -> None:
    locks = SessionLocks()
    with locks.hold("s1"):
        acquired = threading.Event()

        def _other() -> None:
            with locks.hold("s2"):
                acquired.set()

        thread = threading.Thread(target=_other)
        thread.start()
        assert acquired.wait(timeout=1)
        thread.join()
        assert locks.active_count() == 1
    assert locks.active_count() == 0
