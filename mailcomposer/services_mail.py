import asyncio
import logging
import smtplib
from email import policy
from email.message import EmailMessage
from email.utils import formataddr, make_msgid

from mailcomposer.errors import DeliverySendFailed, TransportUnavailable
from mailcomposer.schemas import DeliveryReceipt, Message
from mailcomposer.utils.settings import MailSettings


logger = logging.getLogger(__name__)


def _split_content_type(content_type: str) -> tuple[str, str]:
    maintype, _, subtype = content_type.split(";")[0].strip().lower().partition("/")
    if not maintype or not subtype:
        return "application", "octet-stream"
    return maintype, subtype


def build_message(sender: str, message: Message, sender_name: str | None = None) -> EmailMessage:
    """Assemble the MIME envelope: text + HTML alternatives, then attachments."""
    msg = EmailMessage()
    msg["Subject"] = message.subject
    msg["From"] = formataddr((sender_name, sender)) if sender_name else sender
    msg["To"] = message.recipient
    msg["Message-ID"] = make_msgid(domain=sender.rpartition("@")[2] or None)
    msg.set_content(message.text_body, cte="quoted-printable")
    msg.add_alternative(message.html_body, subtype="html", cte="quoted-printable")
    for attachment in message.attachments:
        maintype, subtype = _split_content_type(attachment.content_type)
        msg.add_attachment(
            attachment.content,
            maintype=maintype,
            subtype=subtype,
            filename=attachment.filename,
            # None lets the email package pick its default for named parts
            disposition="attachment" if attachment.force_download else None,
        )
    return msg


def _transmit(server: smtplib.SMTP, sender: str, recipients: list[str],
              msg: EmailMessage) -> tuple[list[str], list[str], str]:
    """Run MAIL/RCPT/DATA on an open connection.

    Returns (accepted, rejected, final relay reply). Raises an smtplib error when
    the sender, every recipient, or the data is refused.
    """
    code, reply = server.mail(sender)
    if code != 250:
        server.rset()
        raise smtplib.SMTPSenderRefused(code, reply, sender)
    accepted: list[str] = []
    refused: dict[str, tuple[int, bytes]] = {}
    for rcpt in recipients:
        code, reply = server.rcpt(rcpt)
        if code in (250, 251):
            accepted.append(rcpt)
        else:
            refused[rcpt] = (code, reply)
    if not accepted:
        server.rset()
        raise smtplib.SMTPRecipientsRefused(refused)
    code, reply = server.data(msg.as_bytes(policy=policy.SMTP))
    if code != 250:
        server.rset()
        raise smtplib.SMTPDataError(code, reply)
    return accepted, list(refused), f"{code} {reply.decode('utf-8', 'replace')}"


class MailTransport:
    """Owns the single authenticated SMTP connection for the process.

    The connection is opened lazily and replaced wholesale (never patched in
    place) whenever a NOOP health check or a send shows it is broken. All SMTP
    traffic happens under one asyncio lock, in worker threads.
    """

    def __init__(self, settings: MailSettings, smtp_factory=smtplib.SMTP):
        self.settings = settings
        self._smtp_factory = smtp_factory
        self._connection: smtplib.SMTP | None = None
        self._lock = asyncio.Lock()

    @property
    def sender(self) -> str | None:
        return self.settings.email_user

    def _connect(self) -> smtplib.SMTP:
        s = self.settings
        server = self._smtp_factory(s.smtp_host, s.smtp_port, timeout=s.timeout)
        try:
            if s.use_tls:
                server.starttls()
            server.login(s.email_user, s.email_password)
        except Exception:
            _quit_quietly(server)
            raise
        return server

    @staticmethod
    def _is_healthy(server: smtplib.SMTP) -> bool:
        try:
            code, _ = server.noop()
        except (smtplib.SMTPException, OSError):
            return False
        return code == 250

    async def _ready_connection(self) -> smtplib.SMTP:
        # caller holds self._lock
        if not self.settings.has_credentials:
            raise TransportUnavailable("Mail credentials not configured (EMAIL_USER / EMAIL_PASSWORD)")
        server = self._connection
        if server is not None and await asyncio.to_thread(self._is_healthy, server):
            return server
        if server is not None:
            logger.info("SMTP connection to %s went stale, reconnecting", self.settings.smtp_host)
            self._connection = None
            await asyncio.to_thread(_quit_quietly, server)
        try:
            server = await asyncio.to_thread(self._connect)
        except (smtplib.SMTPException, OSError) as exc:
            logger.warning("SMTP connection to %s:%s failed: %s",
                           self.settings.smtp_host, self.settings.smtp_port, exc)
            raise TransportUnavailable(f"Could not connect to mail relay: {exc}") from exc
        self._connection = server
        logger.info("SMTP connection to %s ready", self.settings.smtp_host)
        return server

    async def ensure_ready(self) -> bool:
        async with self._lock:
            await self._ready_connection()
        return True

    async def send(self, message: Message) -> DeliveryReceipt:
        logger.info(
            "Sending email to %s (subject length %d, %d attachments)",
            message.recipient, len(message.subject), len(message.attachments),
        )
        async with self._lock:
            server = await self._ready_connection()
            msg = build_message(self.sender, message, self.settings.sender_name)
            try:
                accepted, rejected, response = await asyncio.to_thread(
                    _transmit, server, self.sender, [message.recipient], msg
                )
            except (smtplib.SMTPException, OSError) as exc:
                if isinstance(exc, (smtplib.SMTPServerDisconnected, OSError)):
                    self._connection = None
                logger.error("Sending to %s failed: %s", message.recipient, exc)
                raise DeliverySendFailed(f"Failed to send email: {exc}") from exc
        logger.info("Email to %s accepted: %s", message.recipient, response)
        return DeliveryReceipt(
            message_id=msg["Message-ID"],
            response=response,
            accepted=accepted,
            rejected=rejected,
        )

    async def close(self) -> None:
        async with self._lock:
            server, self._connection = self._connection, None
        if server is not None:
            await asyncio.to_thread(_quit_quietly, server)


def _quit_quietly(server: smtplib.SMTP) -> None:
    try:
        server.quit()
    except (smtplib.SMTPException, OSError) as exc:
        logger.debug("Ignoring error while closing SMTP connection: %s", exc)


# Startup-time credential validation
async def validate_mail_credentials(transport: MailTransport) -> dict[str, str]:
    """Attempt to connect and log in. Returns map address->"ok" or error string."""
    address = transport.sender or "_config"
    try:
        await transport.ensure_ready()
    except TransportUnavailable as exc:
        return {address: f"login failed: {exc.detail}"}
    return {address: "ok"}
