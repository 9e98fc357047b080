"""
SMTP delivery of verification submissions.

A submission is sent as one HTML email to the back-office mailbox with the
document images, the live photo or video attached, and reply-to set to the
applicant.
"""

import asyncio
import logging
import re
import smtplib
import ssl
from dataclasses import dataclass
from email.message import EmailMessage
from email.utils import formataddr, make_msgid
from html import escape
from typing import Callable, List, Optional, Tuple

from src.config import settings
from src.models.internal_models import SubmissionAttachment, SubmissionPayload
from src.utils.image_utils import (
    ImageProcessingError,
    data_url_extension,
    decode_data_url,
)

logger = logging.getLogger(__name__)

NOT_PROVIDED = "Not provided"


class SubmissionError(Exception):
    """Base exception for submission delivery failures."""
    pass


class PayloadTooLarge(SubmissionError):
    """Raised when the submission exceeds the delivery size limit."""
    pass


class DeliveryFailed(SubmissionError):
    """Raised when the delivery channel rejects or cannot send the submission."""
    pass


@dataclass(frozen=True)
class DeliveryReceipt:
    message_id: str
    recipients: Tuple[str, ...]
    attachment_count: int


def attachment_stem(full_name: str) -> str:
    """Applicant name with whitespace runs replaced by underscores."""
    return re.sub(r"\s+", "_", full_name.strip())


def attachment_from_data_url(prefix: str, full_name: str, data_url: str) -> SubmissionAttachment:
    """
    Decode a data URL into a named attachment.

    Raises:
        ImageProcessingError: If the data URL is not valid base64
    """
    extension = data_url_extension(data_url)
    content_type = "image/png" if extension == "png" else "image/jpeg"
    return SubmissionAttachment(
        filename=f"{prefix}_{attachment_stem(full_name)}.{extension}",
        content_type=content_type,
        data=decode_data_url(data_url)
    )


def attachments_from_data_urls(
    full_name: str,
    front_id: Optional[str] = None,
    back_id: Optional[str] = None,
    selfie: Optional[str] = None
) -> List[SubmissionAttachment]:
    """
    Build the standard attachment set from data URLs.

    Entries that are empty or fail to decode are skipped with a warning so
    the submission still goes out with whatever could be attached.
    """
    attachments = []
    for prefix, data_url in (("front_id", front_id), ("back_id", back_id), ("selfie", selfie)):
        if not data_url or not data_url.strip():
            continue
        try:
            attachments.append(attachment_from_data_url(prefix, full_name, data_url))
        except ImageProcessingError as e:
            logger.warning(f"Skipping {prefix} attachment: {e}")
    return attachments


def _row(label: str, value: Optional[str]) -> str:
    return (
        '<tr><td style="padding: 12px; font-weight: bold; width: 200px; background: #f8f9fa; '
        f'border: 1px solid #dee2e6;">{escape(label)}:</td>'
        f'<td style="padding: 12px; border: 1px solid #dee2e6;">{escape(value or NOT_PROVIDED)}</td></tr>'
    )


def _section(title: str) -> str:
    return (
        '<h2 style="color: #1c402a; border-bottom: 2px solid #1c402a; padding-bottom: 10px;">'
        f"{escape(title)}</h2>"
    )


def render_submission_html(payload: SubmissionPayload) -> str:
    """Render the back-office HTML summary for a submission."""
    info = payload.personal_info
    parts = [
        '<div style="font-family: Arial, sans-serif; line-height: 1.6; color: #333; max-width: 800px; margin: auto;">',
        '<div style="background: #1c402a; color: #fff; padding: 20px; text-align: center;">',
        '<h1 style="margin: 0; font-size: 24px;">Identity Verification</h1>',
        '<p style="margin: 5px 0 0;">New Identity Verification Request</p></div>',
        '<div style="padding: 30px;">',
        _section("Personal Information"),
        '<table style="width: 100%; border-collapse: collapse; margin-bottom: 25px;">',
        _row("Full Name", info.full_name),
        _row("Email", info.email),
        _row("Phone", info.phone),
        _row("Region", info.region),
        _row("Address", info.address),
        "</table>",
        _section("License Information"),
        '<table style="width: 100%; border-collapse: collapse; margin-bottom: 25px;">',
        _row("License Number", info.license_number),
        _row("Date of Birth", info.date_of_birth),
        _row("Blood Type", info.blood_type),
        _row("National ID", info.national_id),
        "</table>",
    ]

    result = payload.match_result
    if result is not None:
        colour = "#155724" if result.is_match else "#721c24"
        background = "#d4edda" if result.is_match else "#f8d7da"
        verdict = "Verification PASSED" if result.is_match else "Verification FAILED"
        status = "Identity Verified" if result.is_match else "Identity Not Verified"
        parts += [
            _section("Face Verification Results"),
            f'<div style="background: {background}; border-radius: 5px; padding: 15px; margin-bottom: 25px;">',
            f'<h3 style="margin: 0 0 10px; color: {colour};">{verdict}</h3>',
            f'<p style="margin: 0; color: {colour};">',
            f"<strong>Match Percentage:</strong> {result.match_percentage}%<br>",
            f"<strong>Method:</strong> {escape(result.method)}<br>",
            f"<strong>Status:</strong> {status}</p></div>",
        ]

    if payload.video_duration is not None:
        parts += [
            _section("Live Video"),
            f"<p><strong>Duration:</strong> {payload.video_duration:.1f} seconds</p>",
        ]

    parts.append(_section("Attached Files"))
    if payload.attachments:
        parts.append("<ul>")
        parts += [f"<li>{escape(a.filename)}</li>" for a in payload.attachments]
        parts.append("</ul>")
    else:
        parts.append(f"<p>{NOT_PROVIDED}</p>")

    parts += [
        '<div style="background: #e9ecef; padding: 15px; border-radius: 5px; margin-top: 25px;">',
        '<p style="margin: 0; font-size: 14px; color: #6c757d;">',
        f"<strong>Submitted on:</strong> {payload.submitted_at:%Y-%m-%d %H:%M:%S} UTC<br>",
        "This is an automated submission from the identity verification service.</p></div>",
        "</div></div>",
    ]
    return "".join(parts)


class SubmissionMailer:
    """
    Sends submissions over SMTP.

    smtplib is blocking, so delivery runs in a worker thread.
    """

    def __init__(
        self,
        host: Optional[str] = None,
        port: Optional[int] = None,
        use_tls: Optional[bool] = None,
        username: Optional[str] = None,
        password: Optional[str] = None,
        sender_name: Optional[str] = None,
        recipient: Optional[str] = None,
        max_bytes: Optional[int] = None,
        timeout: Optional[float] = None,
        smtp_factory: Optional[Callable[..., smtplib.SMTP]] = None
    ):
        """
        Initialize mailer.

        Args:
            host: SMTP host (default: settings.smtp_host)
            port: SMTP port; 465 uses implicit TLS, anything else STARTTLS
            use_tls: Whether to encrypt the connection
            username: SMTP login, also the sender address
            password: SMTP password
            sender_name: Display name of the sender
            recipient: Back-office mailbox (default: the sender address)
            max_bytes: Maximum total attachment size
            timeout: SMTP socket timeout in seconds
            smtp_factory: Callable returning an SMTP connection, mainly for tests
        """
        self.host = host or settings.smtp_host
        self.port = port or settings.smtp_port
        self.use_tls = settings.smtp_use_tls if use_tls is None else use_tls
        self.username = username if username is not None else settings.smtp_user
        self.password = password if password is not None else settings.smtp_pass
        self.sender_name = sender_name or settings.mail_from_name
        self.recipient = recipient or settings.mail_to or self.username
        self.max_bytes = max_bytes or settings.max_submission_bytes
        self.timeout = timeout or settings.smtp_timeout
        self._smtp_factory = smtp_factory

    def build_message(self, payload: SubmissionPayload) -> EmailMessage:
        """Compose the submission email."""
        info = payload.personal_info
        sender = self.username or "no-reply@localhost"

        message = EmailMessage()
        message["Subject"] = f"New Identity Verification - {info.full_name}"
        message["From"] = formataddr((self.sender_name, sender))
        message["To"] = self.recipient or sender
        if info.email:
            message["Reply-To"] = info.email
        domain = sender.split("@", 1)[1] if "@" in sender else None
        message["Message-ID"] = make_msgid(domain=domain)

        message.set_content(
            f"New identity verification request from {info.full_name} "
            f"({info.email}). View this message as HTML for details."
        )
        message.add_alternative(render_submission_html(payload), subtype="html")

        for attachment in payload.attachments:
            maintype, _, subtype = attachment.content_type.partition("/")
            message.add_attachment(
                attachment.data,
                maintype=maintype or "application",
                subtype=subtype or "octet-stream",
                filename=attachment.filename
            )
        return message

    def _connect(self) -> smtplib.SMTP:
        if self._smtp_factory is not None:
            return self._smtp_factory(self.host, self.port, timeout=self.timeout)
        if self.use_tls and self.port == 465:
            return smtplib.SMTP_SSL(
                self.host, self.port, timeout=self.timeout, context=ssl.create_default_context()
            )
        smtp = smtplib.SMTP(self.host, self.port, timeout=self.timeout)
        if self.use_tls:
            smtp.starttls(context=ssl.create_default_context())
        return smtp

    def _send(self, message: EmailMessage) -> None:
        with self._connect() as smtp:
            if self.username and self.password:
                smtp.login(self.username, self.password)
            smtp.send_message(message)

    async def deliver(self, payload: SubmissionPayload) -> DeliveryReceipt:
        """
        Send a submission.

        Args:
            payload: Personal info, match result and attachments

        Returns:
            DeliveryReceipt with the message id

        Raises:
            PayloadTooLarge: If attachments exceed the limit or the server reports 552
            DeliveryFailed: If SMTP is not configured or sending fails
        """
        if payload.size_bytes > self.max_bytes:
            raise PayloadTooLarge(
                f"Submission is {payload.size_bytes} bytes, limit is {self.max_bytes} bytes"
            )
        if not self.recipient:
            raise DeliveryFailed("No recipient mailbox is configured (set SMTP_USER or MAIL_TO)")

        message = self.build_message(payload)
        logger.info(
            f"Sending submission for {payload.personal_info.full_name} "
            f"with {len(payload.attachments)} attachments ({payload.size_bytes} bytes)"
        )

        try:
            await asyncio.to_thread(self._send, message)
        except smtplib.SMTPResponseException as e:
            if e.smtp_code == 552:
                raise PayloadTooLarge(f"Mail server rejected message size: {e.smtp_error!r}")
            logger.error(f"SMTP error {e.smtp_code} sending submission: {e.smtp_error!r}")
            raise DeliveryFailed(f"Mail server error {e.smtp_code}")
        except smtplib.SMTPRecipientsRefused as e:
            refused = e.recipients.get(self.recipient) if e.recipients else None
            if refused and refused[0] == 552:
                raise PayloadTooLarge("Mail server rejected message size")
            logger.error(f"SMTP recipients refused: {e.recipients}")
            raise DeliveryFailed("Mail server refused the recipient")
        except (smtplib.SMTPException, OSError) as e:
            logger.error(f"Failed to send submission: {e}")
            raise DeliveryFailed(f"Failed to send submission: {e}")

        receipt = DeliveryReceipt(
            message_id=message["Message-ID"],
            recipients=(message["To"],),
            attachment_count=len(payload.attachments)
        )
        logger.info(f"Submission sent: {receipt.message_id}")
        return receipt
