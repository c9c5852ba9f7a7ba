import json
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from mailcomposer.errors import DeliverySendFailed, TransportUnavailable
from mailcomposer.main import create_app
from mailcomposer.utils.settings import MailSettings, Settings

from conftest import FakeTransport


def _settings(**overrides) -> Settings:
    values = dict(
        mail=MailSettings(email_user="sender@example.com", email_password="secret", sender_name="Bob"),
        verify_on_startup=False,
        timezone="UTC",
    )
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def client(transport):
    app = create_app(_settings(), transport=transport)
    with TestClient(app) as c:
        yield c


def _future(**delta) -> str:
    return (datetime.now(timezone.utc) + timedelta(**delta)).isoformat()


def test_root(client):
    assert client.get("/").json() == {"message": "Email server is running"}


def test_send_email_formats_body(client, transport):
    resp = client.post("/send-email", data={"to": "x@y.com", "subject": "Hi", "content": "Hello\n\nWorld"})

    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is True
    assert body["messageId"] == "<1@test.local>"
    assert body["accepted"] == ["x@y.com"]
    assert body["rejected"] == []
    sent = transport.sent[0]
    assert sent.html_body == "Hello<br><br>World"
    assert sent.text_body == "Hello\n\nWorld"


def test_send_alias_with_attachments(client, transport):
    resp = client.post(
        "/send",
        data={"to": "x@y.com", "subject": "Clip", "content": "see attached"},
        files=[
            ("attachments", ("clip.mp4", b"\x00\x01", "video/mp4")),
            ("attachments", ("notes.txt", b"notes", "text/plain")),
        ],
    )

    assert resp.status_code == 200
    attachments = transport.sent[0].attachments
    assert [(a.filename, a.content_type, a.force_download) for a in attachments] == [
        ("clip.mp4", "video/mp4", True),
        ("notes.txt", "text/plain", False),
    ]
    assert attachments[0].content == b"\x00\x01"


def test_send_missing_fields(client, transport):
    resp = client.post("/send-email", data={"to": "x@y.com", "content": "   "})

    assert resp.status_code == 400
    body = resp.json()
    assert body["success"] is False
    assert "subject" in body["error"] and "content" in body["error"]
    assert transport.sent == []


def test_send_invalid_recipient(client, transport):
    resp = client.post("/send-email", data={"to": "nobody", "subject": "Hi", "content": "Hello"})
    assert resp.status_code == 400
    assert transport.sent == []


def test_attachment_size_limit(transport):
    app = create_app(_settings(max_attachment_mb=0), transport=transport)
    with TestClient(app) as c:
        resp = c.post(
            "/send-email",
            data={"to": "x@y.com", "subject": "Hi", "content": "Hello"},
            files=[("attachments", ("big.bin", b"x", "application/octet-stream"))],
        )
    assert resp.status_code == 413
    assert transport.sent == []


@pytest.mark.parametrize("error,status", [
    (DeliverySendFailed("Failed to send email: boom"), 500),
    (TransportUnavailable("relay down"), 503),
])
def test_send_errors_surface(error, status):
    app = create_app(_settings(), transport=FakeTransport(fail_with=error))
    with TestClient(app) as c:
        resp = c.post("/send-email", data={"to": "x@y.com", "subject": "Hi", "content": "Hello"})
    assert resp.status_code == status
    assert resp.json()["success"] is False
    assert resp.json()["error"] == error.detail


def test_verify_credentials():
    app = create_app(_settings(), transport=FakeTransport())
    with TestClient(app) as c:
        assert c.post("/verify-credentials").json()["success"] is True

    app = create_app(_settings(), transport=FakeTransport(ready_error=TransportUnavailable("no creds")))
    with TestClient(app) as c:
        resp = c.post("/verify-credentials")
    assert resp.status_code == 503


def test_schedule_list_and_cancel(client, transport):
    when = _future(hours=1)
    resp = client.post(
        "/schedule-email",
        data={"to": "a@example.com", "subject": "Later", "content": "Hello", "scheduledTime": when},
    )

    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is True
    assert body["message"].startswith("Email scheduled for ")
    job_id = body["jobId"]
    assert job_id.startswith("a@example.com-")

    jobs = client.get("/jobs").json()
    assert [j["id"] for j in jobs] == [job_id]
    assert datetime.fromisoformat(jobs[0]["nextInvocation"]) == datetime.fromisoformat(when)

    assert client.delete(f"/jobs/{job_id}").json() == {"success": True}
    assert client.get("/jobs").json() == []
    assert client.delete(f"/jobs/{job_id}").json() == {"success": False}
    assert transport.sent == []


def test_schedule_naive_time_uses_configured_timezone(transport):
    app = create_app(_settings(timezone="Asia/Kolkata"), transport=transport)
    naive = (datetime.now(timezone.utc) + timedelta(days=2)).replace(tzinfo=None, microsecond=0)
    with TestClient(app) as c:
        resp = c.post(
            "/schedule",
            data={"to": "a@example.com", "subject": "Later", "content": "Hello", "scheduledTime": naive.isoformat()},
        )
        assert resp.status_code == 200
        scheduled = datetime.fromisoformat(resp.json()["scheduledTime"])
    assert scheduled.utcoffset() == timedelta(hours=5, minutes=30)
    assert scheduled.replace(tzinfo=None) == naive


@pytest.mark.parametrize("value", ["not a date", "2020-01-01T00:00:00+00:00"])
def test_schedule_rejects_bad_time(client, value):
    resp = client.post(
        "/schedule-email",
        data={"to": "a@example.com", "subject": "Later", "content": "Hello", "scheduledTime": value},
    )
    assert resp.status_code == 400
    assert resp.json()["success"] is False
    assert client.get("/jobs").json() == []


def test_schedule_requires_time(client):
    resp = client.post("/schedule-email", data={"to": "a@example.com", "subject": "Later", "content": "Hello"})
    assert resp.status_code == 400
    assert "scheduledTime" in resp.json()["error"]


def test_bulk_send_personalizes_each_copy(client, transport):
    recipients = [
        {"email": "ada@example.com", "name": "Ada Lovelace"},
        {"email": "grace@example.com", "name": "Grace Hopper"},
    ]
    resp = client.post(
        "/bulk-email",
        data={
            "subject": "Hello {{name}}",
            "content": "Hi {{first_name}},\nregards {{sender_name}}",
            "recipients": json.dumps(recipients),
        },
    )

    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is True
    assert [r["to"] for r in body["results"]] == ["ada@example.com", "grace@example.com"]
    assert [m.subject for m in transport.sent] == ["Hello Ada Lovelace", "Hello Grace Hopper"]
    assert transport.sent[0].html_body == "Hi Ada,<br>regards Bob"


def test_bulk_send_reports_per_recipient_failures():
    transport = FakeTransport(fail_with=DeliverySendFailed("Failed to send email: mailbox full"))
    app = create_app(_settings(), transport=transport)
    recipients = [{"email": "broken", "name": "X"}, {"email": "ada@example.com", "name": "Ada"}]
    with TestClient(app) as c:
        body = c.post(
            "/bulk-email",
            data={"subject": "Hi", "content": "Hello", "recipients": json.dumps(recipients)},
        ).json()

    assert body["success"] is False
    assert [r["success"] for r in body["results"]] == [False, False]
    assert body["results"][1]["error"] == "Failed to send email: mailbox full"
    assert [m.recipient for m in transport.sent] == ["ada@example.com"]


def test_bulk_schedule_creates_one_job_per_recipient(client, transport):
    recipients = [{"email": "ada@example.com", "name": "Ada"}, {"email": "grace@example.com", "name": "Grace"}]
    body = client.post(
        "/bulk-email",
        data={
            "subject": "Hi",
            "content": "Hello {{name}}",
            "recipients": json.dumps(recipients),
            "scheduledTime": _future(days=1),
        },
    ).json()

    job_ids = [r["jobId"] for r in body["results"]]
    assert [j["id"] for j in client.get("/jobs").json()] == job_ids
    assert transport.sent == []


def test_bulk_rejects_malformed_recipients(client):
    resp = client.post("/bulk-email", data={"subject": "Hi", "content": "Hello", "recipients": "{oops"})
    assert resp.status_code == 400


def test_upload_recipients_csv(client):
    resp = client.post(
        "/upload-recipients",
        files={"file": ("people.csv", b"email,name\nada@example.com,Ada\n", "text/csv")},
    )
    assert resp.json() == {"recipients": [{"email": "ada@example.com", "name": "Ada"}]}


def test_upload_recipients_rejects_other_files(client):
    resp = client.post("/upload-recipients", files={"file": ("people.txt", b"ada@example.com", "text/plain")})
    assert resp.status_code == 400


def test_shutdown_closes_transport_and_drops_jobs(transport):
    app = create_app(_settings(), transport=transport)
    with TestClient(app) as c:
        c.post(
            "/schedule-email",
            data={"to": "a@example.com", "subject": "Later", "content": "Hello", "scheduledTime": _future(hours=1)},
        )
        assert len(c.get("/jobs").json()) == 1
    assert app.state.scheduler.list_jobs() == []
    assert transport.closed is True


def test_bulk_line_break_in_name_fails_only_that_recipient(client, transport):
    recipients = [
        {"email": "ada@example.com", "name": "Ada"},
        {"email": "eve@example.com", "name": "Eve\nBcc: spy@evil.com"},
        {"email": "bob@example.com", "name": "Bob"},
    ]
    resp = client.post(
        "/bulk-email",
        data={"subject": "Hello {{name}}", "content": "Hi", "recipients": json.dumps(recipients)},
    )

    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is False
    assert [r["success"] for r in body["results"]] == [True, False, True]
    assert "single line" in body["results"][1]["error"]
    assert [m.recipient for m in transport.sent] == ["ada@example.com", "bob@example.com"]


def test_send_rejects_multiline_subject(client, transport):
    resp = client.post("/send-email", data={"to": "x@y.com", "subject": "Hi\r\nBcc: spy@evil.com", "content": "Hello"})

    assert resp.status_code == 400
    assert resp.json()["success"] is False
    assert transport.sent == []


@pytest.mark.parametrize("to", ["a@x.com, b@y.com", "a@x.com\nb@y.com"])
def test_send_rejects_more_than_one_recipient(client, transport, to):
    resp = client.post("/send-email", data={"to": to, "subject": "Hi", "content": "Hello"})

    assert resp.status_code == 400
    assert resp.json()["success"] is False
    assert transport.sent == []


def test_schedule_rejects_more_than_one_recipient(client):
    resp = client.post(
        "/schedule-email",
        data={"to": "a@x.com, b@y.com", "subject": "Later", "content": "Hello", "scheduledTime": _future(hours=1)},
    )
    assert resp.status_code == 400
    assert client.get("/jobs").json() == []
