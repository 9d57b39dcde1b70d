"""
Notification sink: short operational emails after workflow transitions.

Recipients are resolved while the request's session is open; the send itself
is queued on BackgroundTasks and never affects the transaction that
triggered it.
"""

import structlog

from budgetflow.services.email_service import send_email

logger = structlog.get_logger()

TEMPLATES = {
    "approval_request": {
        "subject": "[BudgetFlow] {entity_label} {reference}: your approval is required",
        "html": (
            "<h2>Approval Required</h2>"
            "<p><strong>{entity_label} {reference}</strong> is waiting for you at the "
            "<strong>{stage}</strong> stage.</p>"
            "<p><strong>Title:</strong> {title}</p>"
            "<p><strong>Amount:</strong> {currency} {amount_display}</p>"
            "<p><strong>Requester:</strong> {requester_email}</p>"
        ),
    },
    "approved": {
        "subject": "[BudgetFlow] {entity_label} {reference}: approved",
        "html": (
            "<h2>{entity_label} Approved</h2>"
            "<p><strong>{reference}</strong> has been "
            "<span style='color:green'>approved</span> by every approver.</p>"
        ),
    },
    "rejected": {
        "subject": "[BudgetFlow] {entity_label} {reference}: rejected",
        "html": (
            "<h2>{entity_label} Rejected</h2>"
            "<p><strong>{reference}</strong> was "
            "<span style='color:red'>rejected</span> at the {stage} stage.</p>"
            "<p><strong>Reason:</strong> {reason}</p>"
        ),
    },
    "budget_alert": {
        "subject": "[BudgetFlow] Budget code {code} is at {utilization}% ({level})",
        "html": (
            "<h2>Budget Utilization Alert</h2>"
            "<p>Budget code <strong>{code}</strong> ({name}) has used "
            "{utilization}% of its budget.</p>"
            "<p><strong>Remaining:</strong> {currency} {remaining_display}</p>"
        ),
    },
    "revision_request": {
        "subject": "[BudgetFlow] Budget revision for {code}: your approval is required",
        "html": (
            "<h2>Budget Revision</h2>"
            "<p>A change of budget code <strong>{code}</strong> from "
            "{currency} {previous_display} to {currency} {requested_display} "
            "is waiting for you.</p>"
            "<p><strong>Reason:</strong> {reason}</p>"
        ),
    },
}


def format_amount(cents: int) -> str:
    """500000 → '5,000.00'."""
    return f"{cents / 100:,.2f}"


def render(template_id: str, context: dict) -> tuple[str, str]:
    template = TEMPLATES[template_id]
    ctx = dict(context)
    ctx.setdefault("currency", "XAF")
    for key in list(ctx):
        if key.endswith("_cents") and isinstance(ctx[key], int):
            ctx.setdefault(key[: -len("_cents")] + "_display", format_amount(ctx[key]))
    if "amount_display" not in ctx and isinstance(ctx.get("amount_cents"), int):
        ctx["amount_display"] = format_amount(ctx["amount_cents"])
    return template["subject"].format(**ctx), template["html"].format(**ctx)


async def send_notification(
    template_id: str,
    recipient_emails: list[str],
    context: dict,
) -> bool:
    if template_id not in TEMPLATES:
        logger.warning("notification_template_not_found", template_id=template_id)
        return False

    emails = [e for e in (recipient_emails or []) if e]
    if not emails:
        logger.warning("notification_no_recipients", template_id=template_id)
        return False

    try:
        subject, html = render(template_id, context)
    except KeyError as e:
        logger.error("notification_template_render_error", template_id=template_id, missing_key=str(e))
        return False

    result = await send_email(emails, subject, html)
    logger.info(
        "notification_sent",
        template_id=template_id,
        recipients=emails,
        success=result,
    )
    return result


def queue_chain_notifications(
    background_tasks,
    outcome,
    *,
    entity_label: str,
    reference: str,
    requester_email: str,
    title: str = "",
    amount_cents: int = 0,
    currency: str = "XAF",
    reason: str = "",
) -> None:
    """After a decision: tell the next approver, or the requester on a terminal outcome."""
    context = {
        "entity_label": entity_label,
        "reference": reference,
        "title": title,
        "amount_cents": amount_cents,
        "currency": currency,
        "requester_email": requester_email,
    }
    if outcome.is_rejected:
        background_tasks.add_task(
            send_notification,
            template_id="rejected",
            recipient_emails=[requester_email],
            context={**context, "stage": outcome.step.stage.lower(), "reason": reason or "-"},
        )
    elif outcome.is_final:
        background_tasks.add_task(
            send_notification,
            template_id="approved",
            recipient_emails=[requester_email],
            context=context,
        )
    elif outcome.next_step is not None:
        queue_approval_request(background_tasks, outcome.next_step, context)


def queue_approval_request(background_tasks, step, context: dict) -> None:
    background_tasks.add_task(
        send_notification,
        template_id="approval_request",
        recipient_emails=[step.approver_email],
        context={**context, "stage": step.stage.lower()},
    )
