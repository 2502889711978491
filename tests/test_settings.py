from pathlib import Path

import pytest

from batch_app_factory.settings import RuntimeSettings


def test_defaults_match_build_contract() -> None:
    settings = RuntimeSettings.from_env()
    assert settings.poll_interval_sec == 3.0
    assert settings.build_timeout_sec == 600.0
    assert settings.idle_grace_sec == 5.0
    assert settings.exit_settle_sec == 1.0
    assert settings.lock_stale_sec == 30.0
    assert settings.lock_max_wait_sec == 10.0
    assert settings.build_argv == ["core/scripts/run_idle_job.sh", "--force"]
    assert settings.batch_jobs_path == Path("runtime") / "data" / "batch_jobs.json"
    assert settings.leases_path.name == "batch_leases.json"
    assert settings.idea_backlog_path.name == "idea_backlog.json"
    assert settings.build_status_path.name == "build_status.json"
    assert settings.event_log_path is None


def test_from_env_reads_overrides(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("BATCH_RUNTIME_ROOT", str(tmp_path / "rt"))
    monkeypatch.setenv("BATCH_BUILD_COMMAND", "make build 'with space'")
    monkeypatch.setenv("BATCH_POLL_INTERVAL_SEC", "0.5")
    monkeypatch.setenv("BATCH_BUILD_TIMEOUT_SEC", "30")
    monkeypatch.setenv("BATCH_RECURSION_LIMIT", "500")
    monkeypatch.setenv("BATCH_EVENT_LOG_DIR", str(tmp_path / "logs"))

    settings = RuntimeSettings.from_env()

    assert settings.data_dir == tmp_path / "rt" / "data"
    assert settings.build_argv == ["make", "build", "with space"]
    assert settings.poll_interval_sec == 0.5
    assert settings.recursion_limit == 500
    assert settings.event_log_path == tmp_path / "logs"


def test_lease_ttl_covers_a_whole_build(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("BATCH_LEASE_TTL_SEC", "10")
    settings = RuntimeSettings.from_env()
    assert settings.lease_ttl_sec >= settings.build_timeout_sec + settings.exit_settle_sec + settings.poll_interval_sec


@pytest.mark.parametrize(
    "name, value",
    [
        ("BATCH_POLL_INTERVAL_SEC", "abc"),
        ("BATCH_POLL_INTERVAL_SEC", "nan"),
        ("BATCH_BUILD_TIMEOUT_SEC", "0"),
        ("BATCH_RECURSION_LIMIT", "3"),
        ("BATCH_RECURSION_LIMIT", "1.5"),
        ("BATCH_BUILD_COMMAND", "   "),
        ("BATCH_BUILD_COMMAND", "run 'unterminated"),
        ("BATCH_RUNTIME_ROOT", ""),
    ],
)
def test_invalid_env_raises(monkeypatch: pytest.MonkeyPatch, name: str, value: str) -> None:
    monkeypatch.setenv(name, value)
    with pytest.raises(ValueError):
        RuntimeSettings.from_env()


def test_timeout_must_exceed_poll_interval(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("BATCH_POLL_INTERVAL_SEC", "20")
    monkeypatch.setenv("BATCH_BUILD_TIMEOUT_SEC", "10")
    with pytest.raises(ValueError, match="BATCH_BUILD_TIMEOUT_SEC"):
        RuntimeSettings.from_env()


def test_env_file_is_loaded_without_overriding(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    env_file = tmp_path / ".env"
    env_file.write_text("BATCH_POLL_INTERVAL_SEC=1.5\nBATCH_IDLE_GRACE_SEC=9\n", encoding="utf-8")
    monkeypatch.setenv("BATCH_IDLE_GRACE_SEC", "2")

    settings = RuntimeSettings.from_env(env_file=env_file)

    assert settings.poll_interval_sec == 1.5
    assert settings.idle_grace_sec == 2.0


def test_missing_env_file_is_ignored(tmp_path: Path) -> None:
    settings = RuntimeSettings.from_env(env_file=tmp_path / "absent.env")
    assert settings.poll_interval_sec == 3.0
