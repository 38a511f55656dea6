from __future__ import annotations

import smtplib
from email.mime.text import MIMEText

from .settings import settings


def _smtp_configured() -> bool:
    return settings.enable_email and all(
        [settings.smtp_host, settings.smtp_port, settings.smtp_user, settings.smtp_password, settings.email_from, settings.email_to]
    )


def send_email(subject: str, body: str) -> bool:
    """Send a plain-text alert. Returns False when e-mail is off or delivery failed.

    Configured with FDP_ENABLE_EMAIL, FDP_SMTP_HOST/PORT/USER/PASSWORD and
    FDP_EMAIL_FROM/TO. Delivery problems never propagate into the caller.
    """
    if not _smtp_configured():
        return False

    msg = MIMEText(body, "plain")
    msg["From"] = settings.email_from
    msg["To"] = settings.email_to
    msg["Subject"] = f"[fdp] {subject}"

    try:
        with smtplib.SMTP(settings.smtp_host, settings.smtp_port, timeout=10) as server:
            server.starttls()
            server.login(settings.smtp_user, settings.smtp_password)
            server.sendmail(settings.email_from, [settings.email_to], msg.as_string())
        return True
    except (smtplib.SMTPException, OSError):
        return False


def run_failed(run_id: str, commit_sha: str, branch: str, message: str) -> bool:
    body = f"Run: {run_id}\nCommit: {commit_sha}\nBranch: {branch}\n\n{message}\n"
    return send_email(f"Pipeline run {run_id} failed", body)


def target_changed(service: str, task_id: str, healthy: bool, detail: str) -> bool:
    status = "RECOVERED" if healthy else "UNHEALTHY"
    body = f"Service: {service}\nTask: {task_id}\nTarget: {'healthy' if healthy else 'unhealthy'}\nDetail: {detail}\n"
    return send_email(f"{status}: {service} ({task_id})", body)
