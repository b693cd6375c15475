from llm_router.config import ApiKeys, KeyRotationSettings
from llm_router.errors import ErrorKind
from llm_router.keys import KeyRing


class FakeClock:
    def __init__(self, now: float = 0.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


THREE_KEYS = ApiKeys(primary="k1", secondary="k2", tertiary="k3")


def test_ring_without_keys():
    ring = KeyRing("groq", ApiKeys())
    assert not ring.has_keys
    assert ring.acquire() is None
    assert ring.active_key_id is None


def test_primary_key_is_active_first():
    ring = KeyRing("groq", THREE_KEYS)
    key = ring.acquire()
    assert key.key_id == "groq-primary"
    assert key.value == "k1"
    assert ring.active_key_id == "groq-primary"


def test_auth_failure_flags_and_rotates_round_robin():
    ring = KeyRing("groq", THREE_KEYS)

    assert ring.record_failure("groq-primary", ErrorKind.AUTH_FAILURE) is True
    assert ring.acquire().key_id == "groq-secondary"

    assert ring.record_failure("groq-secondary", ErrorKind.AUTH_FAILURE) is True
    assert ring.acquire().key_id == "groq-tertiary"

    assert ring.record_failure("groq-tertiary", ErrorKind.AUTH_FAILURE) is False
    assert ring.acquire() is None
    assert all(key.flagged for key, _ in ring.snapshot())


def test_repeated_errors_rotate_without_flagging():
    ring = KeyRing("groq", THREE_KEYS, KeyRotationSettings(failover_threshold=2))
    ring.record_failure("groq-primary", ErrorKind.SERVER_ERROR)
    assert ring.acquire().key_id == "groq-primary"

    ring.record_failure("groq-primary", ErrorKind.SERVER_ERROR)
    assert ring.acquire().key_id == "groq-secondary"
    primary = next(key for key, _ in ring.snapshot() if key.key_id == "groq-primary")
    assert not primary.flagged
    assert primary.error_count == 2


def test_quota_based_picks_least_used_key():
    ring = KeyRing("groq", THREE_KEYS, KeyRotationSettings(strategy="quota-based", quota_limit=100))
    ring.record_success("groq-secondary", 50, 10)
    ring.record_success("groq-primary", 100, 10)

    key = ring.acquire()
    assert key.key_id == "groq-tertiary"


def test_performance_based_picks_best_success_rate():
    ring = KeyRing("groq", THREE_KEYS, KeyRotationSettings(strategy="performance-based"))
    ring.record_failure("groq-secondary", ErrorKind.SERVER_ERROR)
    ring.record_success("groq-secondary", 10, 10)
    ring.record_success("groq-tertiary", 10, 50)

    ring.record_failure("groq-primary", ErrorKind.AUTH_FAILURE)
    assert ring.acquire().key_id == "groq-tertiary"


def test_quota_never_exceeds_limit_and_resets_with_window():
    clock = FakeClock()
    ring = KeyRing("groq", THREE_KEYS, KeyRotationSettings(quota_limit=100, quota_window_s=60), clock=clock)
    ring.record_success("groq-primary", 250, 10)

    assert ring.acquire().key_id == "groq-secondary"
    primary = next(key for key, _ in ring.snapshot() if key.key_id == "groq-primary")
    assert primary.quota_used == 100

    clock.now = 61
    primary = next(key for key, _ in ring.snapshot() if key.key_id == "groq-primary")
    assert primary.quota_used == 0


def test_rotation_disabled_uses_primary_only():
    ring = KeyRing("groq", THREE_KEYS, KeyRotationSettings(enabled=False))
    assert len(ring.snapshot()) == 1
    assert ring.record_failure("groq-primary", ErrorKind.AUTH_FAILURE) is False
    assert ring.acquire() is None


def test_exactly_one_active_key():
    ring = KeyRing("groq", THREE_KEYS)
    ring.record_failure("groq-primary", ErrorKind.AUTH_FAILURE)
    assert sum(1 for _, active in ring.snapshot() if active) == 1


def test_reset_unflags_keys():
    ring = KeyRing("groq", ApiKeys(primary="k1"))
    ring.record_failure("groq-primary", ErrorKind.AUTH_FAILURE)
    assert ring.acquire() is None

    ring.reset()
    assert ring.acquire().key_id == "groq-primary"


def test_average_latency_tracks_successes():
    ring = KeyRing("groq", ApiKeys(primary="k1"))
    ring.record_success("groq-primary", 1, 100)
    ring.record_success("groq-primary", 1, 300)
    key = ring.acquire()
    assert key.avg_latency_ms == 200
    assert key.success_rate == 1.0
