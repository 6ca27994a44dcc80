import json
import uuid

import pytest
import structlog

from khscrm.logging import (
    REDACTED,
    _redact_pii,
    configure_logging,
    correlation_id_var,
)


def _redact(**fields):
    return _redact_pii(None, "info", dict(fields))


class TestRedaction:
    def test_token_ids_survive(self):
        old_id, new_id = str(uuid.uuid4()), str(uuid.uuid4())

        event = _redact(
            event="refresh_token_rotated",
            user_id="u1",
            old_token_id=old_id,
            new_token_id=new_id,
            token_id=old_id,
        )

        assert event["old_token_id"] == old_id
        assert event["new_token_id"] == new_id
        assert event["token_id"] == old_id
        assert event["user_id"] == "u1"

    @pytest.mark.parametrize(
        "key", ["password", "refresh_token", "access_token", "authorization", "secret"]
    )
    def test_secret_values_are_masked_completely(self, key):
        event = _redact(**{key: "s3cr3t-value-that-is-long"})
        assert event[key] == REDACTED

    def test_key_match_is_case_insensitive(self):
        assert _redact(Authorization="Bearer abc.def.ghi")["Authorization"] == REDACTED

    def test_email_keeps_domain_only(self):
        assert _redact(email="walt@example.com")["email"] == "w***@example.com"
        assert _redact(email="not-an-address")["email"] == REDACTED

    def test_none_values_left_alone(self):
        assert _redact(refresh_token=None)["refresh_token"] is None


@pytest.fixture
def json_logging():
    configure_logging("INFO", json_output=True, development_mode=False)
    yield
    configure_logging()


def test_rendered_line_keeps_ids_and_hides_tokens(json_logging, capsys):
    token_id = str(uuid.uuid4())
    logger = structlog.get_logger(f"test.{uuid.uuid4().hex}")

    reset_token = correlation_id_var.set("req-42")
    try:
        logger.info(
            "refresh_token_revoked",
            token_id=token_id,
            refresh_token="raw-refresh-value-1234567890",
        )
    finally:
        correlation_id_var.reset(reset_token)

    line = json.loads(capsys.readouterr().out.strip().splitlines()[-1])
    assert line["event"] == "refresh_token_revoked"
    assert line["token_id"] == token_id
    assert line["refresh_token"] == REDACTED
    assert line["correlation_id"] == "req-42"
    assert line["service"] == "khscrm-auth"
