"""
Tests for environment-driven configuration and logging setup
"""

import json
import logging

from core_wallet.config import WalletConfig, get_config, reload_config
from core_wallet.logging_config import REDACTED, JSONFormatter, log_action, redact, setup_logging


class TestWalletConfig:

    def test_defaults(self):
        config = WalletConfig()

        assert config.jwt_expiry_minutes == 15
        assert config.refresh_token_ttl_days == 14
        assert config.lock_timeout_seconds == 5.0

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("WALLET_DATABASE_URL", "memory://")
        monkeypatch.setenv("WALLET_LOCK_TIMEOUT_SECONDS", "0.5")
        monkeypatch.setenv("WALLET_PASSWORD_HASH_ROUNDS", "4")

        config = WalletConfig()

        assert config.database_url == "memory://"
        assert config.lock_timeout_seconds == 0.5
        assert config.password_hash_rounds == 4

    def test_reload_replaces_global(self, monkeypatch):
        monkeypatch.setenv("WALLET_API_PORT", "9999")
        try:
            assert reload_config().api_port == 9999
            assert get_config().api_port == 9999
        finally:
            monkeypatch.delenv("WALLET_API_PORT")
            reload_config()


class TestLogging:

    def test_json_formatter_includes_action_fields(self):
        logger = logging.getLogger("core_wallet.test")
        record = logger.makeRecord(
            "core_wallet.test", logging.INFO, __file__, 1, "Transfer completed", (), None,
            extra={"user_id": "u1", "action": "transfer", "amount": "10.00"}
        )

        payload = json.loads(JSONFormatter().format(record))

        assert payload["message"] == "Transfer completed"
        assert payload["user_id"] == "u1"
        assert payload["action"] == "transfer"

    def test_log_action_emits_record(self, caplog):
        logger = setup_logging("INFO", logger_name="core_wallet.test_secrets", fmt="text")
        logger.propagate = True

        with caplog.at_level(logging.INFO, logger="core_wallet.test_secrets"):
            log_action(logger, "info", "User authenticated successfully",
                       user_id="u1", action="login", resource="auth")

        assert "User authenticated successfully" in caplog.text

    def test_credentials_are_redacted(self):
        cleaned = redact({
            "amount": "10.00",
            "refresh_token": "abc",
            "nested": {"Password": "s3cret", "items": [{"access_token": "jwt"}]},
        })

        assert cleaned["amount"] == "10.00"
        assert cleaned["refresh_token"] == REDACTED
        assert cleaned["nested"]["Password"] == REDACTED
        assert cleaned["nested"]["items"][0]["access_token"] == REDACTED

    def test_log_action_redacts_extra(self):
        logger = logging.getLogger("core_wallet.test_redaction")
        records = []
        handler = logging.Handler()
        handler.emit = records.append
        logger.addHandler(handler)
        logger.setLevel(logging.INFO)
        try:
            log_action(logger, "info", "Session rotated", user_id="u1",
                       extra={"refresh_token": "abc", "previous_session_id": "s1"})
        finally:
            logger.removeHandler(handler)

        payload = json.loads(JSONFormatter().format(records[0]))
        assert payload["extra"] == {"refresh_token": REDACTED, "previous_session_id": "s1"}
        assert "abc" not in json.dumps(payload)
