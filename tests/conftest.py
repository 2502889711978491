import pytest

_ENV_NAMES = (
    "BATCH_RUNTIME_ROOT",
    "BATCH_LAB_ROOT",
    "BATCH_BUILD_COMMAND",
    "BATCH_POLL_INTERVAL_SEC",
    "BATCH_BUILD_TIMEOUT_SEC",
    "BATCH_IDLE_GRACE_SEC",
    "BATCH_EXIT_SETTLE_SEC",
    "BATCH_LOCK_STALE_SEC",
    "BATCH_LOCK_MAX_WAIT_SEC",
    "BATCH_LEASE_TTL_SEC",
    "BATCH_RECURSION_LIMIT",
    "BATCH_EVENT_LOG_DIR",
)


@pytest.fixture(autouse=True)
def clean_batch_env(monkeypatch: pytest.MonkeyPatch) -> None:
    # Also makes monkeypatch remove anything load_dotenv adds during a test.
    for name in _ENV_NAMES:
        monkeypatch.delenv(name, raising=False)
