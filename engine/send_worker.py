"""
Send Worker — one authenticated SMTP send per SendRequest, via aiosmtplib.

Key design:
- Fresh connection per send, logged in with the request sender's credential
- TLS is mandatory: STARTTLS (587) or implicit TLS (465), per SMTP_TLS_MODE
- Attachment bytes are read here, at send time, in a worker thread; a
  failed read fails only this request
- Never raises: every failure becomes SendOutcome.failed(...)
"""

import asyncio
import logging
import mimetypes
from email import encoders
from email.mime.base import MIMEBase
from email.mime.image import MIMEImage
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formataddr, formatdate, make_msgid

import aiosmtplib

import config
from engine.errors import CampaignConfigError
from engine.models import AttachmentRef, Identity, SendOutcome, SendRequest

logger = logging.getLogger("mailfill.send_worker")


def text_to_html(text: str, inline_cid: str = None) -> str:
    """Convert a plain text body to basic HTML, optionally embedding an inline image."""
    html = text.replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;")
    html = html.replace("\n\n", "</p><p>").replace("\n", "<br>")
    image = f'<p><img src="cid:{inline_cid}" alt="image"></p>' if inline_cid else ""
    return f"""<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>
        body {{ font-family: Arial, sans-serif; font-size: 14px; line-height: 1.6; color: #333; }}
        p {{ margin: 0 0 1em 0; }}
    </style>
</head>
<body>
    <p>{html}</p>
    {image}
</body>
</html>"""


def _domain(address: str) -> str:
    return address.split("@", 1)[1] if "@" in address else "localhost"


def _attachment_part(ref: AttachmentRef) -> MIMEBase:
    ctype, encoding = mimetypes.guess_type(ref.path)
    if ctype is None or encoding is not None:
        ctype = "application/octet-stream"
    maintype, subtype = ctype.split("/", 1)
    with open(ref.path, "rb") as f:
        data = f.read()
    part = MIMEBase(maintype, subtype)
    part.set_payload(data)
    encoders.encode_base64(part)
    part.add_header("Content-Disposition", "attachment", filename=ref.filename)
    return part


def build_message(request: SendRequest) -> MIMEMultipart:
    """
    Build the MIME tree for a request.

        mixed
        ├── related (only with an inline image)
        │   ├── alternative (plain + html)
        │   └── image
        └── attachments...

    Raises OSError if an attachment or image cannot be read.
    """
    sender = request.sender
    message_id = make_msgid(domain=_domain(sender.address))

    inline_cid = None
    if request.inline_image is not None:
        inline_cid = make_msgid(domain=_domain(sender.address))[1:-1]

    alternative = MIMEMultipart("alternative")
    alternative.attach(MIMEText(request.body, "plain", "utf-8"))
    alternative.attach(MIMEText(text_to_html(request.body, inline_cid), "html", "utf-8"))

    if inline_cid:
        related = MIMEMultipart("related")
        related.attach(alternative)
        with open(request.inline_image.path, "rb") as f:
            subtype = (mimetypes.guess_type(request.inline_image.path)[0] or "image/png").split("/", 1)[1]
            image = MIMEImage(f.read(), _subtype=subtype)
        image.add_header("Content-ID", f"<{inline_cid}>")
        image.add_header("Content-Disposition", "inline", filename=request.inline_image.filename)
        related.attach(image)
        body_part = related
    else:
        body_part = alternative

    msg = MIMEMultipart("mixed")
    msg.attach(body_part)
    for ref in request.attachments:
        msg.attach(_attachment_part(ref))

    msg["Message-ID"] = message_id
    msg["Date"] = formatdate(localtime=True)
    msg["Subject"] = request.subject
    msg["From"] = formataddr((sender.display_name, sender.address))
    msg["To"] = ", ".join(formataddr((i.display_name, i.address)) for i in request.to)
    if request.cc:
        msg["Cc"] = ", ".join(formataddr((i.display_name, i.address)) for i in request.cc)

    # Threading headers (replies only; forwards start a new thread)
    if request.in_reply_to:
        msg["In-Reply-To"] = request.in_reply_to
        msg["References"] = request.references or request.in_reply_to

    return msg


class SmtpSender:
    """
    Performs sends against the configured endpoint.

    Lifecycle:
        sender = SmtpSender()
        outcome = await sender.send(request)
    """

    def __init__(
        self,
        host: str = None,
        port: int = None,
        tls_mode: str = None,
        timeout: float = None,
        validate_certs: bool = None,
    ):
        self.host = host or config.SMTP_HOST
        self.port = port or config.SMTP_PORT
        self.tls_mode = (tls_mode or config.SMTP_TLS_MODE).lower()
        self.timeout = timeout or config.SEND_TIMEOUT_SECONDS
        self.validate_certs = config.SMTP_VALIDATE_CERTS if validate_certs is None else validate_certs

        if self.tls_mode not in ("starttls", "implicit"):
            raise CampaignConfigError(
                f"SMTP_TLS_MODE must be 'starttls' or 'implicit' (TLS is required), got '{self.tls_mode}'"
            )

    def _client(self) -> aiosmtplib.SMTP:
        implicit = self.tls_mode == "implicit"
        return aiosmtplib.SMTP(
            hostname=self.host,
            port=self.port,
            timeout=self.timeout,
            use_tls=implicit,
            start_tls=not implicit,
            validate_certs=self.validate_certs,
        )

    async def send(self, request: SendRequest) -> SendOutcome:
        sender = request.sender
        recipients = request.recipients

        try:
            # File reads and base64 encoding run off the event loop
            msg = await asyncio.to_thread(build_message, request)
            data = await asyncio.to_thread(msg.as_bytes)
        except OSError as e:
            logger.error(
                "attachment_read_failed",
                extra={"from": sender.address, "error": str(e)[:200]},
            )
            return SendOutcome.failed(f"Attachment read failed: {e}")

        message_id = msg["Message-ID"]
        try:
            smtp = self._client()
            await smtp.connect()
            try:
                await smtp.login(sender.address, sender.credential)
                await smtp.sendmail(sender.address, recipients, data)
            finally:
                try:
                    await smtp.quit()
                except aiosmtplib.SMTPException:
                    pass

            logger.debug(
                "smtp_transmitted",
                extra={"kind": request.kind.value, "from": sender.address, "message_id": message_id[:40]},
            )
            return SendOutcome.ok(message_id)

        except aiosmtplib.SMTPException as e:
            error_code = getattr(e, "code", None)
            logger.debug(
                "smtp_error",
                extra={"from": sender.address, "error_code": error_code, "error": str(e)[:200]},
            )
            return SendOutcome.failed(f"SMTP error from {sender.address}: {e}")

        except (asyncio.TimeoutError, OSError) as e:
            return SendOutcome.failed(f"Connection timeout/error from {sender.address}: {e}")

        except Exception as e:
            return SendOutcome.failed(f"Unexpected error from {sender.address}: {e}")

    async def check_login(self, identity: Identity) -> bool:
        """Log in and out once with this identity. Raises on failure."""
        smtp = self._client()
        await smtp.connect()
        try:
            await smtp.login(identity.address, identity.credential)
        finally:
            try:
                await smtp.quit()
            except aiosmtplib.SMTPException:
                pass
        return True

    async def check_endpoint(self) -> None:
        """Startup validation: the endpoint must accept a TLS connection."""
        if not self.host:
            raise CampaignConfigError("SMTP_HOST not set")
        smtp = self._client()
        try:
            await smtp.connect()
            await smtp.quit()
        except (aiosmtplib.SMTPException, asyncio.TimeoutError, OSError) as e:
            raise CampaignConfigError(f"Send endpoint {self.host}:{self.port} unreachable: {e}") from e
