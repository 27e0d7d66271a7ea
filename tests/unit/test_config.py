import pytest
from pydantic import ValidationError

from stackpilot.config import OrchestratorSettings


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch, tmp_path):
    # No stray .env file or STACKPILOT_* variable leaks into these tests
    monkeypatch.chdir(tmp_path)
    for name in ('RETRY_ATTEMPTS', 'RETRY_BACKOFF_SECONDS', 'CONTINUE_ON_ERROR', 'REMOVE_VOLUMES', 'LOG_LEVEL'):
        monkeypatch.delenv(f'STACKPILOT_{name}', raising=False)


def test_defaults():
    settings = OrchestratorSettings()
    assert settings.retry_attempts == 2
    assert settings.retry_backoff_seconds == 0.5
    assert not settings.continue_on_error
    assert not settings.remove_volumes
    assert settings.log_level == 'WARNING'


def test_from_environment(monkeypatch):
    monkeypatch.setenv('STACKPILOT_RETRY_ATTEMPTS', '3')
    monkeypatch.setenv('STACKPILOT_CONTINUE_ON_ERROR', 'true')
    monkeypatch.setenv('stackpilot_log_level', 'DEBUG')
    monkeypatch.setenv('OTHER', 'ignored')

    settings = OrchestratorSettings()

    assert settings.retry_attempts == 3
    assert settings.continue_on_error
    assert settings.log_level == 'DEBUG'


def test_from_env_file(tmp_path):
    env_file = tmp_path / "orchestrator.env"
    env_file.write_text("STACKPILOT_REMOVE_VOLUMES=1\nSTACKPILOT_RETRY_ATTEMPTS=4\n")

    settings = OrchestratorSettings(_env_file=str(env_file))

    assert settings.remove_volumes
    assert settings.retry_attempts == 4


def test_default_env_file_in_working_directory(tmp_path):
    (tmp_path / ".env").write_text("STACKPILOT_CONTINUE_ON_ERROR=yes\n")
    assert OrchestratorSettings().continue_on_error


def test_environment_wins_over_env_file(tmp_path, monkeypatch):
    (tmp_path / ".env").write_text("STACKPILOT_RETRY_ATTEMPTS=4\n")
    monkeypatch.setenv('STACKPILOT_RETRY_ATTEMPTS', '5')
    assert OrchestratorSettings().retry_attempts == 5


def test_invalid_value(monkeypatch):
    monkeypatch.setenv('STACKPILOT_RETRY_ATTEMPTS', '0')
    with pytest.raises(ValidationError):
        OrchestratorSettings()
