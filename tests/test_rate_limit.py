from stockledger.core.rate_limit import LoginRateLimiter


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def _limiter(clock: FakeClock) -> LoginRateLimiter:
    return LoginRateLimiter(max_attempts=3, window_seconds=60, lock_seconds=120, clock=clock)


def test_lock_engages_at_max_attempts_and_expires():
    clock = FakeClock()
    limiter = _limiter(clock)

    for _ in range(2):
        limiter.register_failure("a@example.com|1.2.3.4")
    assert limiter.check("a@example.com|1.2.3.4") == 0

    limiter.register_failure("a@example.com|1.2.3.4")
    assert limiter.check("a@example.com|1.2.3.4") == 121

    clock.now += 100
    assert limiter.check("a@example.com|1.2.3.4") == 21

    clock.now += 21
    assert limiter.check("a@example.com|1.2.3.4") == 0


def test_failures_outside_window_do_not_count():
    clock = FakeClock()
    limiter = _limiter(clock)

    limiter.register_failure("k")
    limiter.register_failure("k")
    clock.now += 61
    limiter.register_failure("k")

    assert limiter.check("k") == 0


def test_success_resets_and_keys_are_independent():
    clock = FakeClock()
    limiter = _limiter(clock)

    limiter.register_failure("k")
    limiter.register_failure("k")
    limiter.register_success("k")
    limiter.register_failure("k")
    assert limiter.check("k") == 0

    for _ in range(3):
        limiter.register_failure("other")
    assert limiter.check("other") > 0
    assert limiter.check("k") == 0
