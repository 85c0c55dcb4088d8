"""Structured logging helpers (PII-safe)."""

from typing import Any


def mask_email(email: str | None) -> str:
    """Mask a mailbox address for logs, keeping the domain."""
    if not email:
        return ""
    local, _, domain = email.partition("@")
    prefix = local[:3] if local else ""
    return f"{prefix}...@{domain}" if domain else f"{prefix}..."


def build_log_context(
    *,
    account_id: str | None = None,
    user_id: str | None = None,
    job_id: str | None = None,
    job_type: str | None = None,
    email: str | None = None,
    route: str | None = None,
) -> dict[str, Any]:
    """Return a PII-safe log context dict."""
    context: dict[str, Any] = {}
    if account_id:
        context["account_id"] = account_id
    if user_id:
        context["user_id"] = user_id
    if job_id:
        context["job_id"] = job_id
    if job_type:
        context["job_type"] = job_type
    if email:
        context["email"] = mask_email(email)
    if route:
        context["route"] = route
    return context
