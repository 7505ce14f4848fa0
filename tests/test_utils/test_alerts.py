"""Tests for Discord operator alerts.

Tests cover:
    - should_send_alert: throttling per (key, level)
    - send_alert: Discord webhook payload
    - Graceful degradation (no webhook, HTTP errors, timeouts)
"""

from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from bulkgen.utils.alerts import should_send_alert, send_alert


@pytest.fixture
def mock_webhook_url(monkeypatch):
    """Mock DISCORD_WEBHOOK_URL environment variable."""
    webhook_url = "https://discord.com/api/webhooks/test/webhook"
    monkeypatch.setenv("DISCORD_WEBHOOK_URL", webhook_url)
    return webhook_url


def _response(status_code: int) -> MagicMock:
    response = MagicMock()
    response.status_code = status_code
    if status_code >= 400:
        request = httpx.Request("POST", "https://discord.com/api/webhooks/test/webhook")
        response.raise_for_status.side_effect = httpx.HTTPStatusError(
            "error", request=request, response=httpx.Response(status_code, request=request)
        )
    return response


class TestShouldSendAlert:
    def test_throttles_repeated_alerts(self):
        assert should_send_alert("kie", "CRITICAL") is True
        assert should_send_alert("kie", "CRITICAL") is False

    def test_throttle_is_per_key_and_level(self):
        assert should_send_alert("kie", "CRITICAL") is True
        assert should_send_alert("kie", "WARNING") is True
        assert should_send_alert("stub", "CRITICAL") is True


class TestSendAlert:
    async def test_send_critical_alert(self, mock_webhook_url):
        """[P1] CRITICAL alert carries the message and detail fields.

        GIVEN: A configured webhook
        WHEN: A provider auth failure is reported
        THEN: Discord receives a red embed with one field per detail
        """
        with patch("httpx.AsyncClient.post", new_callable=AsyncMock) as mock_post:
            mock_post.return_value = _response(204)

            sent = await send_alert(
                level="CRITICAL",
                message="Rendering provider kie rejected our credentials",
                details={"batch_id": "b-1", "row_id": "r-1"},
            )

        assert sent is True
        assert mock_post.call_args[0][0] == mock_webhook_url
        payload = mock_post.call_args[1]["json"]
        assert "CRITICAL" in payload["content"]
        assert payload["embeds"][0]["color"] == 0xFF0000
        assert [field["name"] for field in payload["embeds"][0]["fields"]] == ["batch_id", "row_id"]

    async def test_message_truncated_to_discord_limit(self, mock_webhook_url):
        with patch("httpx.AsyncClient.post", new_callable=AsyncMock) as mock_post:
            mock_post.return_value = _response(204)

            await send_alert(level="WARNING", message="x" * 5000)

        payload = mock_post.call_args[1]["json"]
        assert len(payload["embeds"][0]["description"]) == 2000

    async def test_no_webhook_configured(self, monkeypatch):
        monkeypatch.delenv("DISCORD_WEBHOOK_URL", raising=False)

        with patch("httpx.AsyncClient.post", new_callable=AsyncMock) as mock_post:
            assert await send_alert("CRITICAL", "provider rejected credentials") is False

        mock_post.assert_not_called()

    @pytest.mark.parametrize("status_code", [400, 500])
    async def test_http_error_returns_false(self, mock_webhook_url, status_code):
        with patch("httpx.AsyncClient.post", new_callable=AsyncMock) as mock_post:
            mock_post.return_value = _response(status_code)

            assert await send_alert("WARNING", "something") is False

    async def test_timeout_returns_false(self, mock_webhook_url):
        with patch("httpx.AsyncClient.post", new_callable=AsyncMock) as mock_post:
            mock_post.side_effect = httpx.TimeoutException("timed out")

            assert await send_alert("CRITICAL", "something") is False
