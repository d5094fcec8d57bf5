from sales_agent.config import Settings


class TestSettings:
    def test_defaults(self, monkeypatch):
        for name in ["DEBOUNCE_DELAY_MS", "BOT_RESPONSE_DELAY_MS", "SESSION_TIMEOUT_MINUTES"]:
            monkeypatch.delenv(name, raising=False)

        settings = Settings(_env_file=None)

        assert settings.debounce_delay_ms == 3000
        assert settings.bot_response_delay_ms == 2300
        assert settings.session_timeout_minutes == 360

    def test_reads_environment(self, mock_env):
        settings = Settings(_env_file=None)

        assert settings.database_url == "sqlite:///:memory:"
        assert settings.bot_response_delay_ms == 1500
        assert settings.alert_bot_token == "test-token"
