"""Unit tests for ReportService."""

import asyncio

import httpx
import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from wizard.api.models import ChannelMessage
from wizard.services.reporter import ReportService


def _mock_client(post):
    mock_client = AsyncMock()
    mock_client.post = post
    mock_client.__aenter__ = AsyncMock(return_value=mock_client)
    mock_client.__aexit__ = AsyncMock(return_value=False)
    return mock_client


@pytest.mark.unit
class TestReportService:
    """Test ReportService in isolation."""

    @pytest.fixture
    def report_service(self):
        """Create ReportService instance."""
        return ReportService(callback_url="http://dashboard:8080/api/wizard/events")

    @pytest.fixture
    def message(self):
        return ChannelMessage(event="install:progress", data={"stage": "pull", "progress": 35}, session_id="tab-1")

    @pytest.mark.asyncio
    async def test_report_success(self, report_service, message):
        """Test successful event report."""
        # Arrange
        mock_response = AsyncMock()
        mock_response.raise_for_status = MagicMock()
        mock_client = _mock_client(AsyncMock(return_value=mock_response))

        with patch('wizard.services.reporter.httpx.AsyncClient', return_value=mock_client):
            # Act
            result = await report_service.report(message)

        # Assert
        assert result is True
        mock_client.post.assert_called_once()
        call_args = mock_client.post.call_args
        assert call_args[0][0] == "http://dashboard:8080/api/wizard/events"
        payload = call_args[1]["json"]
        assert payload["event"] == "install:progress"
        assert payload["data"] == {"stage": "pull", "progress": 35}
        assert payload["session_id"] == "tab-1"
        assert "timestamp" in payload

    @pytest.mark.asyncio
    async def test_report_http_error_not_raised(self, report_service, message):
        """Test that HTTP errors are logged but not raised."""
        # Arrange
        mock_client = _mock_client(AsyncMock(side_effect=httpx.ConnectError("Connection refused")))

        with patch('wizard.services.reporter.httpx.AsyncClient', return_value=mock_client):
            # Act
            result = await report_service.report(message)

        # Assert
        assert result is False

    @pytest.mark.asyncio
    async def test_report_status_error_not_raised(self, report_service, message):
        # Arrange
        mock_response = MagicMock()
        mock_response.raise_for_status = MagicMock(
            side_effect=httpx.HTTPStatusError("503", request=MagicMock(), response=MagicMock())
        )
        mock_client = _mock_client(AsyncMock(return_value=mock_response))

        with patch('wizard.services.reporter.httpx.AsyncClient', return_value=mock_client):
            # Act
            result = await report_service.report(message)

        # Assert
        assert result is False

    @pytest.mark.asyncio
    async def test_run_forwards_subscription_until_cancelled(self, report_service, channel):
        # Arrange
        subscription = channel.subscribe(all_sessions=True)
        channel.publish("install:progress", {"progress": 0}, session_id="a")
        channel.publish("install:complete", {}, session_id="b")
        report_service.report = AsyncMock(return_value=True)

        # Act
        runner = asyncio.create_task(report_service.run(subscription))
        for _ in range(10):
            await asyncio.sleep(0)
        runner.cancel()

        # Assert
        with pytest.raises(asyncio.CancelledError):
            await runner
        events = [call.args[0].event for call in report_service.report.call_args_list]
        assert events == ["install:progress", "install:complete"]
