"""Error taxonomy shared by the transport, the scheduler and the HTTP layer.

Each error carries the HTTP status it maps to; ``main.create_app`` registers a
single handler that renders any of them as ``{success: false, message, error}``.
"""


class MailerError(Exception):
    status_code = 500
    message = "Request failed"

    def __init__(self, detail: str | None = None):
        self.detail = detail or self.message
        super().__init__(self.detail)


class MissingField(MailerError):
    status_code = 400
    message = "Missing required fields"

    def __init__(self, fields: list[str]):
        self.fields = list(fields)
        super().__init__(f"Missing required fields: {', '.join(self.fields)}")


class InvalidRecipient(MailerError):
    status_code = 400
    message = "Invalid recipient address"


class InvalidSubject(MailerError):
    status_code = 400
    message = "Invalid subject"


class InvalidScheduleTime(MailerError):
    status_code = 400
    message = "Scheduled time must be in the future"


class InvalidRecipientFile(MailerError):
    status_code = 400
    message = "Recipient file could not be read"


class AttachmentTooLarge(MailerError):
    status_code = 413
    message = "Attachment exceeds the size limit"


class TransportUnavailable(MailerError):
    status_code = 503
    message = "Mail relay is not available"


class DeliverySendFailed(MailerError):
    status_code = 500
    message = "Failed to send email"
