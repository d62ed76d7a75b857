"""Tests for vmbuilder.notifier module."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import requests

from vmbuilder.notifier import Notifier


def _session(*responses):
    session = MagicMock(spec=requests.Session)
    session.post.side_effect = list(responses)
    return session


def _response(status=200):
    response = MagicMock()
    response.status_code = status
    if status >= 400:
        response.raise_for_status.side_effect = requests.HTTPError(f"{status} Server Error")
    return response


class TestNotify:
    def test_posts_json_payload(self):
        session = _session(_response(200))
        notifier = Notifier(timeout=3, session=session)
        assert notifier.notify("http://ci.example.com/hook", {"id": "abc"}) is True
        session.post.assert_called_once_with("http://ci.example.com/hook", json={"id": "abc"}, timeout=3)

    def test_failure_logged_once_without_retry_by_default(self):
        session = _session(requests.ConnectionError("refused"))
        with patch("vmbuilder.notifier.log") as mock_log:
            assert Notifier(session=session).notify("http://cb", {}) is False
        assert session.post.call_count == 1
        errors = [call for call in mock_log.call_args_list if call[0][0] == "ERROR"]
        assert len(errors) == 1
        assert "http://cb" in errors[0][0][1]

    def test_non_2xx_is_a_failure(self):
        session = _session(_response(502))
        assert Notifier(session=session).notify("http://cb", {}) is False

    def test_retries_then_succeeds(self):
        session = _session(requests.Timeout("slow"), _response(500), _response(204))
        with patch("vmbuilder.notifier.time.sleep") as mock_sleep:
            assert Notifier(retries=2, session=session).notify("http://cb", {}) is True
        assert session.post.call_count == 3
        assert [call[0][0] for call in mock_sleep.call_args_list] == [2, 4]

    def test_gives_up_after_retries(self):
        session = _session(*[requests.ConnectionError("down")] * 3)
        with patch("vmbuilder.notifier.time.sleep"):
            assert Notifier(retries=2, session=session).notify("http://cb", {}) is False
        assert session.post.call_count == 3
