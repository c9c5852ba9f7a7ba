from datetime import datetime
from typing import Optional
import logging

from fastapi import APIRouter, Depends, File, Form, Request, UploadFile
from pydantic import TypeAdapter, ValidationError

from mailcomposer.errors import (
    AttachmentTooLarge,
    DeliverySendFailed,
    InvalidRecipient,
    InvalidScheduleTime,
    InvalidSubject,
    MissingField,
)
from mailcomposer.formatting import personalize
from mailcomposer.recipients import parse_recipient_file
from mailcomposer.schemas import Attachment, Message, Recipient
from mailcomposer.services_jobs import Scheduler
from mailcomposer.services_mail import MailTransport
from mailcomposer.utils.settings import Settings


logger = logging.getLogger(__name__)
router = APIRouter()

_recipient_list = TypeAdapter(list[Recipient])


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_transport(request: Request) -> MailTransport:
    return request.app.state.transport


def get_scheduler(request: Request) -> Scheduler:
    return request.app.state.scheduler


def require_fields(**fields) -> None:
    missing = [name for name, value in fields.items() if value is None or not str(value).strip()]
    if missing:
        raise MissingField(missing)


def parse_scheduled_time(value: str, settings: Settings) -> datetime:
    """Parse an ISO-8601 timestamp; naive values are read in the configured timezone."""
    try:
        scheduled = datetime.fromisoformat(value.strip())
    except ValueError as exc:
        raise InvalidScheduleTime(f"Invalid scheduledTime: {value!r}") from exc
    if scheduled.tzinfo is None:
        scheduled = scheduled.replace(tzinfo=settings.tz)
    return scheduled


async def read_attachments(files: Optional[list[UploadFile]], settings: Settings) -> list[Attachment]:
    limit = settings.max_attachment_mb * 1024 * 1024
    attachments = []
    for upload in files or []:
        if not upload.filename:
            continue
        data = await upload.read()
        if len(data) > limit:
            raise AttachmentTooLarge(f"{upload.filename} exceeds {settings.max_attachment_mb}MB")
        attachments.append(Attachment(
            filename=upload.filename,
            content=data,
            content_type=upload.content_type or "application/octet-stream",
        ))
    return attachments


@router.get("/")
async def read_root():
    return {"message": "Email server is running"}


@router.post("/verify-credentials")
async def verify_credentials(transport: MailTransport = Depends(get_transport)):
    await transport.ensure_ready()
    return {"success": True, "message": "Credentials verified"}


@router.post("/send-email")
@router.post("/send")
async def send_email(
    to: Optional[str] = Form(None),
    subject: Optional[str] = Form(None),
    content: Optional[str] = Form(None),
    attachments: Optional[list[UploadFile]] = File(None),
    settings: Settings = Depends(get_settings),
    transport: MailTransport = Depends(get_transport),
):
    require_fields(to=to, subject=subject, content=content)
    message = Message.compose(to, subject, content, await read_attachments(attachments, settings))
    receipt = await transport.send(message)
    return {
        "success": True,
        "message": "Email sent successfully",
        "messageId": receipt.message_id,
        "response": receipt.response,
        "accepted": receipt.accepted,
        "rejected": receipt.rejected,
    }


@router.post("/schedule-email")
@router.post("/schedule")
async def schedule_email(
    to: Optional[str] = Form(None),
    subject: Optional[str] = Form(None),
    content: Optional[str] = Form(None),
    scheduled_time: Optional[str] = Form(None, alias="scheduledTime"),
    attachments: Optional[list[UploadFile]] = File(None),
    settings: Settings = Depends(get_settings),
    scheduler: Scheduler = Depends(get_scheduler),
):
    require_fields(to=to, subject=subject, content=content, scheduledTime=scheduled_time)
    fire_time = parse_scheduled_time(scheduled_time, settings)
    message = Message.compose(to, subject, content, await read_attachments(attachments, settings))
    job_id = await scheduler.schedule(message, fire_time)
    local = fire_time.astimezone(settings.tz)
    return {
        "success": True,
        "message": f"Email scheduled for {local:%Y-%m-%d %H:%M:%S %Z}",
        "jobId": job_id,
        "scheduledTime": fire_time.isoformat(),
    }


@router.post("/bulk-email")
async def bulk_email(
    subject: Optional[str] = Form(None),
    content: Optional[str] = Form(None),
    recipients: Optional[str] = Form(None),
    scheduled_time: Optional[str] = Form(None, alias="scheduledTime"),
    attachments: Optional[list[UploadFile]] = File(None),
    settings: Settings = Depends(get_settings),
    transport: MailTransport = Depends(get_transport),
    scheduler: Scheduler = Depends(get_scheduler),
):
    """Personalize one template per recipient, then send now or schedule each copy."""
    require_fields(subject=subject, content=content, recipients=recipients)
    try:
        targets = _recipient_list.validate_json(recipients)
    except ValidationError as exc:
        raise InvalidRecipient("recipients must be a JSON list of {email, name} objects") from exc
    if not targets:
        raise MissingField(["recipients"])
    fire_time = parse_scheduled_time(scheduled_time, settings) if scheduled_time else None
    files = await read_attachments(attachments, settings)
    sender_name = settings.mail.sender_name or ""

    results = []
    for target in targets:
        entry = {"to": target.email}
        try:
            message = Message.compose(
                target.email,
                personalize(subject, target.name, sender_name),
                personalize(content, target.name, sender_name),
                files,
            )
            if fire_time is not None:
                entry["jobId"] = await scheduler.schedule(message, fire_time)
            else:
                entry["messageId"] = (await transport.send(message)).message_id
            entry["success"] = True
        except (InvalidRecipient, InvalidSubject, MissingField, DeliverySendFailed) as exc:
            entry["success"] = False
            entry["error"] = exc.detail
        results.append(entry)
    sent = sum(1 for r in results if r["success"])
    logger.info("Bulk request processed: %d of %d succeeded", sent, len(results))
    return {"success": sent == len(results), "results": results}


@router.post("/upload-recipients")
async def upload_recipients(file: UploadFile = File(...)):
    found = parse_recipient_file(file.filename, await file.read())
    return {"recipients": [r.model_dump() for r in found]}


@router.get("/jobs")
async def jobs(scheduler: Scheduler = Depends(get_scheduler)):
    return [{"id": j.id, "nextInvocation": j.next_invocation.isoformat()} for j in scheduler.list_jobs()]


@router.delete("/jobs/{job_id}")
async def cancel_job(job_id: str, scheduler: Scheduler = Depends(get_scheduler)):
    return {"success": scheduler.cancel_job(job_id)}
