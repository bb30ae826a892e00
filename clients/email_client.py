"""
Email gateway client for sending emails via HTTP gateway.

Uses HMAC-SHA256 signature for request authentication. Implements the
Notifier protocol the auth core uses to deliver verification codes.
"""

import hashlib
import hmac
import json
import logging

import requests

logger = logging.getLogger(__name__)


class EmailGatewayError(Exception):
    """Raised when email gateway request fails."""


# purpose value -> (subject, body template); {app} and {code} are filled in
_CODE_TEMPLATES = {
    "email-verification": (
        "Verify Your Email - {app}",
        "Thank you for registering with {app}.\n\n"
        "Your verification code is: {code}\n\n"
        "The code expires in {minutes} minutes. If you did not create an "
        "account, you can ignore this email.",
    ),
    "password-reset": (
        "Password Reset Request - {app}",
        "We received a request to reset your {app} password.\n\n"
        "Your reset code is: {code}\n\n"
        "The code expires in {minutes} minutes. If you did not request a "
        "reset, your password is unchanged.",
    ),
    "two-factor-auth": (
        "Two-Factor Authentication Code - {app}",
        "Your {app} sign-in code is: {code}\n\n"
        "The code expires in {minutes} minutes.",
    ),
}


class EmailGatewayClient:
    """Send emails via HTTP gateway with HMAC signature verification."""

    def __init__(
        self,
        gateway_url: str,
        api_key: str,
        hmac_secret: str,
        app_name: str = "Energy Solutions",
        timeout_seconds: float = 10,
    ):
        """
        Initialize with gateway credentials.

        Args:
            gateway_url: Full URL to the email gateway endpoint
            api_key: API key for X-API-Key header
            hmac_secret: Secret for HMAC-SHA256 signature
            app_name: Product name used in subjects and bodies
            timeout_seconds: Per-request HTTP timeout

        Raises:
            ValueError: If any credential is empty
        """
        if not gateway_url:
            raise ValueError("gateway_url is required")
        if not api_key:
            raise ValueError("api_key is required")
        if not hmac_secret:
            raise ValueError("hmac_secret is required")

        self.gateway_url = gateway_url
        self.api_key = api_key
        self.hmac_secret = hmac_secret
        self.app_name = app_name
        self.timeout_seconds = timeout_seconds

    def _sign_and_send(self, payload: dict) -> None:
        """
        Sign payload with HMAC and send to gateway.

        Args:
            payload: Dict to send as JSON

        Raises:
            EmailGatewayError: On any failure
        """
        payload_json = json.dumps(payload, separators=(",", ":"))

        signature = hmac.new(
            self.hmac_secret.encode("utf-8"),
            payload_json.encode("utf-8"),
            hashlib.sha256,
        ).hexdigest()

        headers = {
            "Content-Type": "application/json",
            "X-API-Key": self.api_key,
            "X-Signature": signature,
        }

        try:
            response = requests.post(
                self.gateway_url,
                data=payload_json,
                headers=headers,
                timeout=self.timeout_seconds,
            )
        except (requests.exceptions.RequestException, ConnectionError) as e:
            logger.error(f"Email gateway connection failed: {e}")
            raise EmailGatewayError(f"Connection failed: {e}")

        try:
            response_data = response.json()
        except ValueError:
            logger.error(f"Email gateway returned invalid JSON: {response.text}")
            raise EmailGatewayError("Invalid response from gateway")

        if response.status_code != 200 or not response_data.get("success"):
            error_msg = response_data.get("message", "Unknown error")
            logger.error(f"Email gateway error: {error_msg}")
            raise EmailGatewayError(f"Gateway error: {error_msg}")

    def send_email(self, to: str, subject: str, body: str) -> None:
        """
        Send a plain-text email via gateway.

        Raises:
            EmailGatewayError: On gateway failure
        """
        payload = {
            "type": "custom",
            "email": to,
            "subject": subject,
            "body": body,
            "sender": "auth",
        }
        self._sign_and_send(payload)
        logger.info(f"Email sent to {to}: {subject}")

    def send_verification_code(
        self,
        email: str,
        code: str,
        purpose: str,
        expires_in_minutes: int,
    ) -> None:
        """
        Send a verification or reset code.

        Args:
            email: Recipient email address
            code: 6-digit code
            purpose: CodePurpose value ("email-verification", "password-reset", ...)
            expires_in_minutes: Shown to the recipient

        Raises:
            ValueError: If purpose has no email template
            EmailGatewayError: On gateway failure
        """
        if purpose not in _CODE_TEMPLATES:
            raise ValueError(f"No email template for purpose '{purpose}'")

        subject, body = _CODE_TEMPLATES[purpose]
        self.send_email(
            to=email,
            subject=subject.format(app=self.app_name),
            body=body.format(app=self.app_name, code=code, minutes=expires_in_minutes),
        )

    def send_welcome(self, email: str, first_name: str) -> None:
        """Send the post-verification welcome email."""
        self.send_email(
            to=email,
            subject=f"Welcome to {self.app_name}!",
            body=(
                f"Hi {first_name},\n\n"
                f"Your email is verified and your {self.app_name} account is ready."
            ),
        )
