"""
Activity: Deliver — emails the outcome of a finished task to the requester,
with the generated files attached as a zip when there are any.

One attempt per terminal item. A failed send is logged and reported as
False; it never changes the item's status.
"""

from __future__ import annotations

import html
import logging
import smtplib
import tempfile
from email.message import EmailMessage
from email.utils import formataddr
from pathlib import Path

import config
from features.work_items.models import ExecutionResult, WorkItem
from utils.archive import archive_artifacts

log = logging.getLogger(__name__)

NO_OUTPUT = "No output generated"

_HTML_TEMPLATE = """<!DOCTYPE html>
<html>
<head>
  <style>
    body {{ font-family: -apple-system, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #333; }}
    .container {{ max-width: 600px; margin: 0 auto; padding: 20px; }}
    .header {{ background: #1a1a2e; color: white; padding: 30px; border-radius: 10px 10px 0 0; }}
    .content {{ background: #f9f9f9; padding: 30px; border-radius: 0 0 10px 10px; }}
    .task {{ background: white; padding: 20px; border-radius: 8px; margin-bottom: 20px; border-left: 4px solid #00d4ff; }}
    .result {{ background: white; padding: 20px; border-radius: 8px; border-left: 4px solid {accent}; }}
    .result pre {{ background: #1a1a2e; color: #fff; padding: 15px; border-radius: 8px; white-space: pre-wrap; }}
    .footer {{ text-align: center; padding: 20px; color: #666; font-size: 0.9rem; }}
  </style>
</head>
<body>
  <div class="container">
    <div class="header">
      <h1 style="margin:0;">{brand}</h1>
      <p style="margin:10px 0 0;">AI Application Development as a Service</p>
    </div>
    <div class="content">
      <h2>{headline}</h2>
      <div class="task">
        <h3>Your Task</h3>
        <p>{task}</p>
        <p><strong>Time Allocated:</strong> {minutes} minutes</p>
        <p><strong>Cost:</strong> ${cost_usd:.2f} ({cost_sol} SOL)</p>
      </div>
      <div class="result">
        <h3>Result</h3>
        <pre>{output}</pre>
        {error_block}
      </div>
      {attachment_block}
    </div>
    <div class="footer">
      <p>Thank you for using {brand}!</p>
      <p>Questions? Reply to this email.</p>
    </div>
  </div>
</body>
</html>
"""


def _format_sol(value: float | None) -> str:
    return f"{value:.6f}" if value is not None else "N/A"


def build_report(item: WorkItem, result: ExecutionResult, has_attachment: bool = False) -> tuple[str, str, str]:
    """Return ``(subject, html_body, text_body)`` for a finished item."""
    brand = config.EMAIL_FROM_NAME
    output = result.output or NO_OUTPUT
    subject = (
        f"Your AI Task is Complete - {brand}" if result.success
        else f"AI Task Update - {brand}"
    )

    error_block = ""
    if result.error:
        error_block = (
            '<p style="color: #ff6b6b;"><strong>Errors:</strong> '
            f"{html.escape(result.error)}</p>"
        )
    attachment_block = ""
    if has_attachment:
        attachment_block = (
            '<div class="task" style="border-left-color: #14f195;">'
            "<h3>Attachments</h3>"
            "<p>Your generated files are attached as a ZIP archive.</p></div>"
        )

    html_body = _HTML_TEMPLATE.format(
        accent="#14f195" if result.success else "#ff6b6b",
        brand=html.escape(brand),
        headline="Task Completed Successfully!" if result.success else "Task Update",
        task=html.escape(item.task_description).replace("\n", "<br>"),
        minutes=item.max_minutes,
        cost_usd=item.cost_usd,
        cost_sol=_format_sol(item.cost_sol),
        output=html.escape(output),
        error_block=error_block,
        attachment_block=attachment_block,
    )

    lines = [
        f"{brand} - Task {'Completed' if result.success else 'Update'}",
        "",
        "Your Task:",
        item.task_description,
        "",
        f"Time Allocated: {item.max_minutes} minutes",
        f"Cost: ${item.cost_usd:.2f} ({_format_sol(item.cost_sol)} SOL)",
        "",
        "Result:",
        output,
    ]
    if result.error:
        lines += ["", f"Errors: {result.error}"]
    if has_attachment:
        lines += ["", "Note: Generated files are attached as a ZIP archive."]
    return subject, html_body, "\n".join(lines)


def _send(message: EmailMessage) -> None:
    with smtplib.SMTP(config.SMTP_HOST, config.SMTP_PORT, timeout=config.HTTP_TIMEOUT_SEC) as smtp:
        smtp.starttls()
        if config.SMTP_USER and config.SMTP_PASS:
            smtp.login(config.SMTP_USER, config.SMTP_PASS)
        smtp.send_message(message)


def _read_archive(path: Path | None) -> tuple[str, bytes] | None:
    if path is None:
        return None
    try:
        return path.name, path.read_bytes()
    except OSError as e:
        log.warning("Could not read artifacts archive %s, sending without it: %s", path, e)
        return None


def _build_message(item: WorkItem, result: ExecutionResult, attachment: tuple[str, bytes] | None) -> EmailMessage:
    subject, html_body, text_body = build_report(item, result, has_attachment=attachment is not None)
    message = EmailMessage()
    message["From"] = formataddr((config.EMAIL_FROM_NAME, config.EMAIL_FROM))
    message["To"] = item.email
    message["Subject"] = subject
    message.set_content(text_body)
    message.add_alternative(html_body, subtype="html")
    if attachment is not None:
        filename, data = attachment
        message.add_attachment(data, maintype="application", subtype="zip", filename=filename)
        log.info("Attaching %s (%d bytes)", filename, len(data))
    return message


def deliver(item: WorkItem, result: ExecutionResult, artifacts_dir: Path | str | None = None) -> bool:
    """Email the report for ``item``. True when the relay accepted it."""
    attachment = None
    if artifacts_dir is not None:
        try:
            with tempfile.TemporaryDirectory(prefix=f"task-{item.id}-") as scratch:
                zip_path = archive_artifacts(artifacts_dir, Path(scratch) / f"task-{item.id}-artifacts.zip")
                attachment = _read_archive(zip_path)
        except OSError as e:
            log.warning("Skipping artifacts for #%d: %s", item.id, e)

    try:
        _send(_build_message(item, result, attachment))
    except Exception as e:
        log.error("Failed to send email for #%d to %s: %s", item.id, item.email, e)
        return False

    log.info("Email sent for #%d to %s", item.id, item.email)
    return True
