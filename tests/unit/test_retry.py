from dealflow.utils.retry import compute_backoff


def test_backoff_doubles_without_jitter():
    assert compute_backoff(1, jitter=0.0) == 30.0
    assert compute_backoff(2, jitter=0.0) == 60.0
    assert compute_backoff(3, jitter=0.0) == 120.0


def test_backoff_jitter_stays_within_fraction():
    for attempt in (1, 2, 3):
        base = 30.0 * 2 ** (attempt - 1)
        for _ in range(50):
            delay = compute_backoff(attempt, jitter=0.1)
            assert base <= delay <= base * 1.1


def test_backoff_custom_base_and_factor():
    assert compute_backoff(3, base=5.0, factor=3.0, jitter=0.0) == 45.0
