"""
AWS SES client wrapper with error handling.

This module provides the SES client used for order emails, with retry on
throttling and connection errors and structured logging of every attempt.
"""

import time
from typing import Any, Optional

import boto3
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    EndpointConnectionError,
)

from storefront.core.logging import get_logger

logger = get_logger(__name__)

# SES error codes that will not succeed on retry
NON_RETRYABLE_ERRORS = (
    "MessageRejected",
    "MailFromDomainNotVerified",
    "ConfigurationSetDoesNotExist",
)


class SESClientError(Exception):
    """Exception for SES errors."""

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.context = context


class SESClient:
    """
    AWS SES client wrapper with error handling and retry logic.

    Calls are blocking; async callers run them in a worker thread.
    """

    def __init__(
        self,
        region_name: str,
        sender: str,
        max_retries: int = 3,
        retry_backoff: float = 1.0,
        client: Optional[Any] = None,
    ) -> None:
        """
        Initialize SES client.

        Args:
            region_name: AWS region name
            sender: Verified sender address
            max_retries: Maximum number of attempts
            retry_backoff: Initial backoff time in seconds for retries
            client: Preconfigured boto3 SES client
        """
        self.sender = sender
        self.max_retries = max_retries
        self.retry_backoff = retry_backoff
        self._client = client or boto3.client("ses", region_name=region_name)

        logger.info("SES client initialized", region=region_name, max_retries=max_retries)

    def send_email(
        self,
        to_addresses: list[str],
        subject: str,
        body_text: str,
        body_html: Optional[str] = None,
    ) -> str:
        """
        Send email via AWS SES with retry logic.

        Args:
            to_addresses: Recipient email addresses
            subject: Email subject
            body_text: Plain text email body
            body_html: HTML email body

        Returns:
            SES message id

        Raises:
            SESClientError: If email sending fails after retries
        """
        if not to_addresses:
            raise SESClientError("At least one recipient email address is required")

        message: dict[str, Any] = {
            "Subject": {"Data": subject, "Charset": "UTF-8"},
            "Body": {"Text": {"Data": body_text, "Charset": "UTF-8"}},
        }
        if body_html:
            message["Body"]["Html"] = {"Data": body_html, "Charset": "UTF-8"}

        last_exception: Optional[Exception] = None
        for attempt in range(self.max_retries):
            try:
                response = self._client.send_email(
                    Source=self.sender,
                    Destination={"ToAddresses": to_addresses},
                    Message=message,
                )
                logger.info(
                    "Email sent via SES",
                    message_id=response["MessageId"],
                    subject=subject,
                )
                return response["MessageId"]

            except ClientError as e:
                error_code = e.response.get("Error", {}).get("Code", "Unknown")
                logger.warning(
                    "SES client error",
                    attempt=attempt + 1,
                    error_code=error_code,
                    error=str(e),
                )
                last_exception = e
                if error_code in NON_RETRYABLE_ERRORS:
                    raise SESClientError(
                        f"SES rejected message: {error_code}",
                        error_code=error_code,
                    ) from e

            except (EndpointConnectionError, BotoCoreError) as e:
                logger.warning(
                    "SES connection error",
                    attempt=attempt + 1,
                    error=str(e),
                )
                last_exception = e

            if attempt < self.max_retries - 1:
                time.sleep(self.retry_backoff * (2**attempt))

        raise SESClientError(
            f"Failed to send email after {self.max_retries} attempts",
            last_error=str(last_exception),
        ) from last_exception
