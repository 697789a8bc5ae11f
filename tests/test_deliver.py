"""Delivery pipeline and artifact archiving."""

from __future__ import annotations

import io
import smtplib
import zipfile

import pytest

import config
from activities import deliver as deliver_mod
from activities.deliver import build_report, deliver
from features.work_items.models import ExecutionResult, WorkItem, WorkItemStatus
from utils.archive import archive_artifacts, collect_files


class FakeSMTP:
    sent: list = []
    logins: list = []
    fail_with: Exception | None = None

    def __init__(self, host, port, timeout=None):
        if FakeSMTP.fail_with is not None:
            raise FakeSMTP.fail_with
        self.host = host
        self.port = port
        self.tls = False

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def starttls(self):
        self.tls = True

    def login(self, user, password):
        FakeSMTP.logins.append((user, password))

    def send_message(self, message):
        assert self.tls, "message sent before STARTTLS"
        FakeSMTP.sent.append(message)


@pytest.fixture
def smtp(monkeypatch):
    FakeSMTP.sent = []
    FakeSMTP.logins = []
    FakeSMTP.fail_with = None
    monkeypatch.setattr(deliver_mod.smtplib, "SMTP", FakeSMTP)
    monkeypatch.setattr(config, "SMTP_PASS", "secret")
    return FakeSMTP


@pytest.fixture
def item():
    return WorkItem(
        id=7,
        email="client@example.com",
        max_minutes=10,
        task_description="Build <b>this</b>\nplease",
        cost_usd=1.0,
        payment_address="WALLET",
        created_at="2026-01-01T00:00:00+00:00",
        status=WorkItemStatus.COMPLETED,
        cost_sol=0.010000007,
    )


def _attachments(message):
    return list(message.iter_attachments())


def test_report_escapes_user_text(item):
    result = ExecutionResult(success=True, output="<script>alert(1)</script>")

    subject, html_body, text_body = build_report(item, result)

    assert subject == "Your AI Task is Complete - WorkingDevsHero"
    assert "&lt;script&gt;" in html_body
    assert "<script>" not in html_body
    assert "Build &lt;b&gt;this&lt;/b&gt;<br>please" in html_body
    assert "$1.00 (0.010000 SOL)" in html_body
    assert "10 minutes" in text_body


def test_failed_report_lists_errors_and_placeholder(item):
    subject, html_body, text_body = build_report(item, ExecutionResult(success=False, output="", error="exit 3"))

    assert subject == "AI Task Update - WorkingDevsHero"
    assert "No output generated" in html_body
    assert "Errors: exit 3" in text_body


def test_deliver_attaches_artifacts(item, smtp, tmp_path):
    (tmp_path / "app.py").write_text("print('hi')")
    (tmp_path / "src").mkdir()
    (tmp_path / "src" / "lib.py").write_text("x = 1")
    (tmp_path / "node_modules").mkdir()
    (tmp_path / "node_modules" / "dep.js").write_text("module.exports = 1")
    (tmp_path / ".cache").mkdir()
    (tmp_path / ".cache" / "blob").write_text("junk")

    assert deliver(item, ExecutionResult(success=True, output="done"), tmp_path) is True

    assert len(smtp.sent) == 1
    message = smtp.sent[0]
    assert message["To"] == "client@example.com"
    assert "WorkingDevsHero" in message["From"]
    assert smtp.logins == [(config.SMTP_USER, "secret")]

    (attachment,) = _attachments(message)
    assert attachment.get_filename() == "task-7-artifacts.zip"
    with zipfile.ZipFile(io.BytesIO(attachment.get_content())) as zf:
        assert sorted(zf.namelist()) == ["app.py", "src/lib.py"]


def test_deliver_without_files_sends_plain_report(item, smtp, tmp_path):
    assert deliver(item, ExecutionResult(success=True, output="done"), tmp_path) is True
    assert _attachments(smtp.sent[0]) == []
    assert deliver(item, ExecutionResult(success=True, output="done")) is True


def test_send_failure_returns_false(item, smtp, tmp_path):
    smtp.fail_with = smtplib.SMTPConnectError(421, "try later")
    assert deliver(item, ExecutionResult(success=True, output="done"), tmp_path) is False


def test_unreadable_archive_is_dropped(item, smtp, tmp_path, monkeypatch):
    (tmp_path / "app.py").write_text("print('hi')")
    monkeypatch.setattr(deliver_mod, "archive_artifacts", lambda src, dest: tmp_path / "gone.zip")

    assert deliver(item, ExecutionResult(success=True, output="done"), tmp_path) is True

    (message,) = smtp.sent
    assert _attachments(message) == []
    assert "ZIP archive" not in message.get_body(("plain",)).get_content()


def test_bad_recipient_header_returns_false(item, smtp):
    item.email = "client@example.com\r\nBcc: someone@example.com"
    assert deliver(item, ExecutionResult(success=True, output="done")) is False
    assert smtp.sent == []


def test_collect_files_skips_hidden_and_dependency_dirs(tmp_path):
    for rel in ["a.txt", "pkg/b.txt", "__pycache__/c.pyc", ".git/HEAD", "deep/node_modules/d.js", ".env"]:
        path = tmp_path / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text("x")

    assert [p.as_posix() for p in collect_files(tmp_path)] == [".env", "a.txt", "pkg/b.txt"]


def test_archive_excludes_itself_and_handles_empty(tmp_path):
    assert archive_artifacts(tmp_path, tmp_path / "out.zip") is None
    assert archive_artifacts(tmp_path / "missing", tmp_path / "out.zip") is None

    (tmp_path / "report.md").write_text("# done")
    first = archive_artifacts(tmp_path, tmp_path / "out.zip")
    second = archive_artifacts(tmp_path, tmp_path / "out.zip")

    assert first == second == tmp_path / "out.zip"
    with zipfile.ZipFile(second) as zf:
        assert zf.namelist() == ["report.md"]
