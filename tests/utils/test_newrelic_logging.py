"""Tests for New Relic logging integration."""

from unittest.mock import patch

import pytest

from src.utils.newrelic_logging import newrelic_error_processor


class TestNewRelicErrorProcessor:
    @pytest.mark.parametrize("level", ["error", "critical"])
    @patch("src.utils.newrelic_logging.newrelic.agent.notice_error")
    def test_error_levels_are_reported(self, mock_notice_error, level):
        event_dict = {"message": "Storage unavailable", "request_id": "req-1"}

        result = newrelic_error_processor(None, level, event_dict)

        mock_notice_error.assert_called_once()
        assert result is event_dict

    @pytest.mark.parametrize("level", ["debug", "info", "warning"])
    @patch("src.utils.newrelic_logging.newrelic.agent.notice_error")
    def test_lower_levels_are_not_reported(self, mock_notice_error, level):
        event_dict = {"message": "Webhook rejected"}

        assert newrelic_error_processor(None, level, event_dict) is event_dict
        mock_notice_error.assert_not_called()
