from backend.config import Settings


def test_voting_defaults():
    settings = Settings(_env_file=None)

    assert settings.minimum_approval_percentage == 51
    assert settings.default_voting_session == "proposal_selection"
    assert settings.voting_deadline_check_minutes == 5
    assert settings.voting_threshold_check_minutes == 15
    assert settings.voting_reminder_check_minutes == 60


def test_environment_overrides_are_case_insensitive(monkeypatch):
    monkeypatch.setenv("MINIMUM_APPROVAL_PERCENTAGE", "75")
    monkeypatch.setenv("scheduler_enabled", "false")
    monkeypatch.setenv("CORS_ORIGINS", '["https://society.example.com"]')

    settings = Settings(_env_file=None)

    assert settings.minimum_approval_percentage == 75
    assert settings.scheduler_enabled is False
    assert settings.cors_origins == ["https://society.example.com"]
