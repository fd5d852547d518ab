"""Tests for the cron trigger that starts batch runs."""

import requests

from scheduler import main as scheduler


class FakeResponse:
    def __init__(self, status_code: int, text: str = "{}") -> None:
        self.status_code = status_code
        self.text = text


class FakeSession:
    def __init__(self, status_code: int = 200, error: Exception | None = None) -> None:
        self.status_code = status_code
        self.error = error
        self.calls = []

    def post(self, url, json=None, timeout=None, headers=None):
        self.calls.append({"url": url, "json": json, "headers": headers})
        if self.error is not None:
            raise self.error
        return FakeResponse(self.status_code)


class TestParseRunKeys:
    """Tests for BATCH_RUN_KEYS parsing."""

    def test_comma_and_newline_separated(self):
        assert scheduler.parse_run_keys("acme/a, acme/b\nacme/c") == ["acme/a", "acme/b", "acme/c"]

    def test_blanks_and_duplicates_dropped(self):
        assert scheduler.parse_run_keys(" ,acme/a,,acme/a ") == ["acme/a"]


class TestTriggerBatch:
    """Tests for posting the start action."""

    def test_posts_start_action(self):
        session = FakeSession()
        assert scheduler.trigger_batch("acme/a", session=session) == 200
        call = session.calls[0]
        assert call["url"].endswith("/batch-analysis")
        assert call["json"] == {"run_key": "acme/a", "action": "start"}

    def test_conflict_is_not_an_error(self):
        session = FakeSession(status_code=409)
        assert scheduler.trigger_batch("acme/a", session=session) == 409

    def test_network_error_returns_none(self):
        session = FakeSession(error=requests.ConnectionError("down"))
        assert scheduler.trigger_batch("acme/a", session=session) is None
