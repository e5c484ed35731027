import threading

from gatekey.modules.auth.dos_guard import DoSGuard, GuardDecision


def test_allows_by_default(dos_guard):
    assert dos_guard.check("1.2.3.4") is GuardDecision.ALLOWED
    assert dos_guard.allow("1.2.3.4")
    assert not dos_guard.is_circuit_open()


def test_source_rate_limited_after_max_attempts(dos_guard):
    for _ in range(4):
        dos_guard.record_failure("1.2.3.4")
    assert dos_guard.check("1.2.3.4") is GuardDecision.ALLOWED

    dos_guard.record_failure("1.2.3.4")
    assert dos_guard.check("1.2.3.4") is GuardDecision.RATE_LIMITED
    # Other sources are unaffected
    assert dos_guard.check("5.6.7.8") is GuardDecision.ALLOWED


def test_rate_limit_window_slides(dos_guard, clock):
    for _ in range(5):
        dos_guard.record_failure("1.2.3.4")
    assert dos_guard.check("1.2.3.4") is GuardDecision.RATE_LIMITED

    clock.advance(61)
    assert dos_guard.check("1.2.3.4") is GuardDecision.ALLOWED
    assert "1.2.3.4" not in dos_guard.snapshot()["sources"]


def test_circuit_opens_at_threshold(clock):
    guard = DoSGuard(threshold=10, max_full_scan_attempts=100, clock=clock)

    for _ in range(9):
        guard.record_failure("a")
    assert guard.check("a") is GuardDecision.ALLOWED

    guard.record_failure("b")
    assert guard.is_circuit_open()
    assert guard.check("anyone") is GuardDecision.CIRCUIT_OPEN


def test_circuit_recovers_lazily_after_cooldown(clock):
    guard = DoSGuard(threshold=3, cooldown_seconds=60, max_full_scan_attempts=100, clock=clock)
    for _ in range(3):
        guard.record_failure()

    clock.advance(30)
    assert guard.check() is GuardDecision.CIRCUIT_OPEN

    clock.advance(31)
    assert guard.snapshot()["circuit_open"] is True  # nothing closes it until a check
    assert guard.check() is GuardDecision.ALLOWED
    assert guard.snapshot()["failure_count"] == 0


def test_failure_while_open_extends_cooldown(clock):
    guard = DoSGuard(threshold=2, cooldown_seconds=60, max_full_scan_attempts=100, clock=clock)
    guard.record_failure()
    guard.record_failure()

    clock.advance(50)
    guard.record_failure()
    clock.advance(50)
    assert guard.check() is GuardDecision.CIRCUIT_OPEN


def test_concurrent_failures_are_all_counted(clock):
    guard = DoSGuard(threshold=10_000, max_full_scan_attempts=10_000, clock=clock)

    def hammer():
        for _ in range(250):
            guard.record_failure("shared")

    threads = [threading.Thread(target=hammer) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    state = guard.snapshot()
    assert state["failure_count"] == 2000
    assert state["sources"]["shared"] == 2000


def test_reset(dos_guard):
    for _ in range(10):
        dos_guard.record_failure()
    assert dos_guard.is_circuit_open()

    dos_guard.reset()
    assert dos_guard.snapshot() == {
        "circuit_open": False,
        "failure_count": 0,
        "last_failure_time": 0.0,
        "sources": {},
    }
