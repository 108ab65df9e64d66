"""Tests for settings helpers."""

from pydantic import SecretStr

from chainly.config import settings


class TestSecretStatus:
    def test_set_secret_reveals_nothing(self):
        configured = settings.model_copy(
            update={"encryption_key": SecretStr("abcdefgh-secret-material-0123456789")}
        )

        status = configured.secret_status("encryption_key")

        assert status == "<set>"
        assert "abcd" not in status

    def test_plain_string_setting(self):
        configured = settings.model_copy(update={"google_client_id": "client-123.apps"})

        assert configured.secret_status("google_client_id") == "<set>"

    def test_missing_or_empty_setting(self):
        configured = settings.model_copy(update={"google_client_id": None})

        assert configured.secret_status("google_client_id") == "<not set>"
        assert configured.secret_status("no_such_setting") == "<not set>"
