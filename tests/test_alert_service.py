from unittest.mock import MagicMock, Mock, patch

import httpx
import pytest

from app.services.alert_service import (
    alert_critical,
    alert_error,
    alert_warning,
    send_alert,
)


def configured(mock_settings):
    mock_settings.alert_bot_token = "test-token"
    mock_settings.alert_chat_id = "test-chat"


class TestSendAlert:
    @patch("app.services.alert_service.settings")
    def test_returns_false_when_not_configured(self, mock_settings):
        mock_settings.alert_bot_token = None
        mock_settings.alert_chat_id = None
        result = send_alert("ERROR", "Test message")
        assert result is False

    @patch("app.services.alert_service.settings")
    @patch("app.services.alert_service.httpx.Client")
    def test_sends_alert_to_telegram(self, mock_client_class, mock_settings):
        configured(mock_settings)
        mock_client = MagicMock()
        mock_client_class.return_value.__enter__.return_value = mock_client

        mock_response = Mock()
        mock_response.status_code = 200
        mock_client.post.return_value = mock_response

        result = send_alert("ERROR", "Job agotó sus intentos")

        assert result is True
        mock_client.post.assert_called_once()

        call_args = mock_client.post.call_args
        assert call_args[0][0] == "https://api.telegram.org/bottest-token/sendMessage"
        json_data = call_args[1]["json"]
        assert json_data["chat_id"] == "test-chat"
        assert "ERROR" in json_data["text"]
        assert "[x]" in json_data["text"]

    @patch("app.services.alert_service.settings")
    @patch("app.services.alert_service.httpx.Client")
    def test_includes_context_in_message(self, mock_client_class, mock_settings):
        configured(mock_settings)
        mock_client = MagicMock()
        mock_client_class.return_value.__enter__.return_value = mock_client
        mock_client.post.return_value = Mock(status_code=200)

        context = {"job_id": "123", "error": "test error"}
        send_alert("ERROR", "Test message", context)

        json_data = mock_client.post.call_args[1]["json"]
        assert "job_id: 123" in json_data["text"]

    @patch("app.services.alert_service.settings")
    @patch("app.services.alert_service.httpx.Client")
    def test_returns_false_on_telegram_error(self, mock_client_class, mock_settings):
        configured(mock_settings)
        mock_client = MagicMock()
        mock_client_class.return_value.__enter__.return_value = mock_client
        mock_client.post.return_value = Mock(status_code=400)

        result = send_alert("ERROR", "Test message")

        assert result is False

    @patch("app.services.alert_service.settings")
    @patch("app.services.alert_service.httpx.Client")
    def test_returns_false_on_network_error(self, mock_client_class, mock_settings):
        configured(mock_settings)
        mock_client_class.return_value.__enter__.side_effect = httpx.ConnectError("Network error")

        result = send_alert("ERROR", "Test message")

        assert result is False


class TestAlertShortcuts:
    @pytest.mark.parametrize(
        "shortcut,level",
        [(alert_warning, "WARNING"), (alert_error, "ERROR"), (alert_critical, "CRITICAL")],
    )
    @patch("app.services.alert_service.send_alert", return_value=True)
    def test_shortcut_levels(self, mock_send, shortcut, level):
        assert shortcut("Cola detenida", {"pending": 12}) is True
        mock_send.assert_called_once_with(level, "Cola detenida", {"pending": 12})

    @patch("app.services.alert_service.send_alert", return_value=False)
    def test_context_is_optional(self, mock_send):
        alert_warning("Sin contexto")
        mock_send.assert_called_once_with("WARNING", "Sin contexto", None)
