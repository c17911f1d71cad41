"""
Test suite for the AWS SES client wrapper.

Covers message construction, retry with backoff on throttling and
connection errors, and immediate failure for errors SES will not recover
from. The boto3 client is replaced by a mock.
"""

from unittest.mock import MagicMock, patch

import pytest
from botocore.exceptions import ClientError, EndpointConnectionError

from storefront.services.notifications.aws_clients import SESClient, SESClientError


# ============================================================================
# Test Fixtures
# ============================================================================


@pytest.fixture
def boto_client() -> MagicMock:
    """Mock boto3 SES client."""
    client = MagicMock()
    client.send_email.return_value = {"MessageId": "msg-123"}
    return client


@pytest.fixture
def ses_client(boto_client: MagicMock) -> SESClient:
    return SESClient(
        region_name="us-east-1",
        sender="orders@example.com",
        max_retries=3,
        retry_backoff=0.5,
        client=boto_client,
    )


@pytest.fixture
def mock_sleep():
    with patch("storefront.services.notifications.aws_clients.time.sleep") as mock:
        yield mock


def _client_error(code: str) -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": code}}, "SendEmail")


# ============================================================================
# Unit Tests - Sending
# ============================================================================


class TestSendEmail:
    """Successful sends and message layout."""

    def test_send_email_success(self, ses_client: SESClient, boto_client: MagicMock):
        message_id = ses_client.send_email(
            ["jane@example.com"], "Order confirmed", "Thanks!", "<p>Thanks!</p>"
        )

        assert message_id == "msg-123"
        boto_client.send_email.assert_called_once_with(
            Source="orders@example.com",
            Destination={"ToAddresses": ["jane@example.com"]},
            Message={
                "Subject": {"Data": "Order confirmed", "Charset": "UTF-8"},
                "Body": {
                    "Text": {"Data": "Thanks!", "Charset": "UTF-8"},
                    "Html": {"Data": "<p>Thanks!</p>", "Charset": "UTF-8"},
                },
            },
        )

    def test_text_only_email(self, ses_client: SESClient, boto_client: MagicMock):
        ses_client.send_email(["jane@example.com"], "Order confirmed", "Thanks!")

        body = boto_client.send_email.call_args.kwargs["Message"]["Body"]
        assert "Html" not in body

    def test_recipient_required(self, ses_client: SESClient, boto_client: MagicMock):
        with pytest.raises(SESClientError):
            ses_client.send_email([], "Order confirmed", "Thanks!")

        boto_client.send_email.assert_not_called()


# ============================================================================
# Error Handling - Retries
# ============================================================================


class TestRetries:
    """Retry and failure behaviour."""

    def test_throttling_retried(self, ses_client: SESClient, boto_client: MagicMock, mock_sleep):
        boto_client.send_email.side_effect = [
            _client_error("Throttling"),
            {"MessageId": "msg-456"},
        ]

        assert ses_client.send_email(["jane@example.com"], "Hi", "Body") == "msg-456"
        mock_sleep.assert_called_once_with(0.5)

    def test_non_retryable_error_raised_immediately(
        self, ses_client: SESClient, boto_client: MagicMock, mock_sleep
    ):
        boto_client.send_email.side_effect = _client_error("MessageRejected")

        with pytest.raises(SESClientError) as exc_info:
            ses_client.send_email(["jane@example.com"], "Hi", "Body")

        assert exc_info.value.context == {"error_code": "MessageRejected"}
        assert boto_client.send_email.call_count == 1
        mock_sleep.assert_not_called()

    def test_gives_up_after_max_retries(
        self, ses_client: SESClient, boto_client: MagicMock, mock_sleep
    ):
        boto_client.send_email.side_effect = EndpointConnectionError(
            endpoint_url="https://email.us-east-1.amazonaws.com"
        )

        with pytest.raises(SESClientError) as exc_info:
            ses_client.send_email(["jane@example.com"], "Hi", "Body")

        assert "after 3 attempts" in str(exc_info.value)
        assert "email.us-east-1.amazonaws.com" in exc_info.value.context["last_error"]
        assert boto_client.send_email.call_count == 3
        assert [c.args[0] for c in mock_sleep.call_args_list] == [0.5, 1.0]
