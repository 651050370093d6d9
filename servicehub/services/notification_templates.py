"""
Appointment notification templates.

Renders the subject, HTML and plain-text bodies for every notification the
appointment lifecycle and reminder scheduler emit.
"""
import re
from datetime import datetime
from enum import Enum
from html import escape, unescape
from typing import Any, Dict, Optional, Tuple

from servicehub import config
from servicehub.models.appointment import Appointment, AppointmentStatus, UserSummary


class NotificationKind(str, Enum):
    APPOINTMENT_CONFIRMATION = "APPOINTMENT_CONFIRMATION"
    STAFF_NEW_APPOINTMENT = "STAFF_NEW_APPOINTMENT"
    STATUS_CHANGE = "STATUS_CHANGE"
    STAFF_APPOINTMENT_CANCELLED = "STAFF_APPOINTMENT_CANCELLED"
    STAFF_APPOINTMENT_REASSIGNED = "STAFF_APPOINTMENT_REASSIGNED"
    CLIENT_APPOINTMENT_REASSIGNED = "CLIENT_APPOINTMENT_REASSIGNED"
    APPOINTMENT_REMINDER = "APPOINTMENT_REMINDER"


STATUS_MESSAGES = {
    AppointmentStatus.COMPLETED: "Your appointment has been marked as completed.",
    AppointmentStatus.CANCELLED: "Your appointment has been cancelled.",
    AppointmentStatus.RESCHEDULED: (
        "Your appointment has been rescheduled. Please see the updated details below."
    ),
}

SIGNATURE = "Best regards,<br>The Services Team"


def format_date(dt: datetime) -> str:
    return dt.strftime("%B %d, %Y")


def format_time_range(start: datetime, end: datetime) -> str:
    return f"{start.strftime('%I:%M %p')} - {end.strftime('%I:%M %p')}"


def _name(user: Optional[UserSummary], fallback: str = "there") -> str:
    if user is None:
        return fallback
    return user.username or user.email or fallback


def _appointment_url(appointment: Appointment) -> str:
    return f"{config.FRONTEND_URL}/dashboard/appointments/{appointment.id}"


def _appointments_url() -> str:
    return f"{config.FRONTEND_URL}/dashboard/appointments"


def _details(rows: Dict[str, str]) -> str:
    items = "".join(
        f"<li><strong>{escape(label)}:</strong> {escape(value)}</li>"
        for label, value in rows.items()
    )
    return f"<ul>{items}</ul>"


def _button(url: str, label: str) -> str:
    return (
        f'<p><a href="{url}" style="display: inline-block; background-color: #1976d2; '
        f'color: white; padding: 10px 20px; text-decoration: none; border-radius: 4px;">'
        f'{label}</a></p>'
    )


def _schedule_rows(appointment: Appointment) -> Dict[str, str]:
    return {
        "Title": appointment.title,
        "Date": format_date(appointment.start_time),
        "Time": format_time_range(appointment.start_time, appointment.end_time),
    }


def render(
    kind: NotificationKind,
    appointment: Appointment,
    recipient: Optional[UserSummary],
    context: Optional[Dict[str, Any]] = None
) -> Tuple[str, str, str]:
    """
    Render a notification.

    Args:
        kind: Notification kind
        appointment: Appointment the message is about
        recipient: Addressee (used for the greeting)
        context: Kind-specific values (previous_status, notes, reason,
            client, staff, new_staff, timeframe)

    Returns:
        Tuple of (subject, html_content, text_content)
    """
    context = context or {}
    greeting = f"<p>Hello {escape(_name(recipient))},</p>"
    location = appointment.location or "To be confirmed"

    if kind == NotificationKind.APPOINTMENT_CONFIRMATION:
        subject = f"Appointment Confirmation: {appointment.title}"
        rows = _schedule_rows(appointment)
        rows["Location"] = location
        rows["Status"] = appointment.status.value
        body = (
            "<h1>Your Appointment Has Been Scheduled</h1>" + greeting
            + "<p>Your appointment request has been received:</p>" + _details(rows)
            + _button(_appointment_url(appointment), "View Appointment")
        )

    elif kind == NotificationKind.STAFF_NEW_APPOINTMENT:
        subject = f"New Appointment: {appointment.title}"
        rows = _schedule_rows(appointment)
        rows["Client"] = _name(context.get("client"), appointment.client)
        rows["Service"] = appointment.service_type.value
        rows["Location"] = location
        body = (
            "<h1>New Appointment Assigned to You</h1>" + greeting
            + "<p>A new appointment has been assigned to you:</p>" + _details(rows)
            + _button(_appointment_url(appointment), "View Appointment")
        )

    elif kind == NotificationKind.STATUS_CHANGE:
        subject = f"Appointment Status Update: {appointment.title}"
        previous = context.get("previous_status")
        previous = previous.value if isinstance(previous, AppointmentStatus) else previous
        message = STATUS_MESSAGES.get(
            appointment.status,
            f"The status of your appointment has been updated from {previous} "
            f"to {appointment.status.value}."
        )
        rows = _schedule_rows(appointment)
        rows["Location"] = location
        rows["Previous Status"] = str(previous)
        rows["New Status"] = appointment.status.value
        notes = context.get("notes")
        body = (
            "<h1>Appointment Status Update</h1>" + greeting
            + f"<p><strong>{escape(message)}</strong></p>" + _details(rows)
            + (f"<p><strong>Additional Notes:</strong> {escape(notes)}</p>" if notes else "")
            + _button(_appointment_url(appointment), "View Appointment")
        )

    elif kind == NotificationKind.STAFF_APPOINTMENT_CANCELLED:
        subject = f"Appointment Cancelled: {appointment.title}"
        rows = {"Title": appointment.title, "Client": _name(context.get("client"), appointment.client)}
        rows["Date"] = format_date(appointment.start_time)
        rows["Time"] = format_time_range(appointment.start_time, appointment.end_time)
        reason = context.get("reason")
        body = (
            "<h1>Appointment Cancelled</h1>" + greeting
            + "<p><strong>An appointment assigned to you has been cancelled.</strong></p>"
            + _details(rows)
            + (f"<p><strong>Cancellation Reason:</strong> {escape(reason)}</p>" if reason else "")
            + "<p>This time slot is now available for other appointments.</p>"
            + _button(_appointments_url(), "View Appointments")
        )

    elif kind == NotificationKind.STAFF_APPOINTMENT_REASSIGNED:
        subject = f"Appointment Reassigned: {appointment.title}"
        new_staff = _name(context.get("new_staff"), appointment.staff)
        rows = {"Title": appointment.title, "Client": _name(context.get("client"), appointment.client)}
        rows["Date"] = format_date(appointment.start_time)
        rows["Time"] = format_time_range(appointment.start_time, appointment.end_time)
        body = (
            "<h1>Appointment Reassigned</h1>" + greeting
            + f"<p>An appointment previously assigned to you has been reassigned to "
              f"{escape(new_staff)}:</p>"
            + _details(rows)
            + "<p>This time slot is now available for other appointments.</p>"
            + _button(_appointments_url(), "View Appointments")
        )

    elif kind == NotificationKind.CLIENT_APPOINTMENT_REASSIGNED:
        subject = f"Appointment Update: {appointment.title}"
        rows = _schedule_rows(appointment)
        rows["New Staff Member"] = _name(context.get("new_staff"), appointment.staff)
        body = (
            "<h1>Appointment Staff Update</h1>" + greeting
            + "<p>Your appointment has been reassigned to a different staff member:</p>"
            + _details(rows)
            + "<p>All other appointment details remain the same.</p>"
            + _button(_appointment_url(appointment), "View Appointment")
        )

    elif kind == NotificationKind.APPOINTMENT_REMINDER:
        subject = f"Reminder: Upcoming Appointment - {appointment.title}"
        timeframe = context.get("timeframe", "soon")
        rows = _schedule_rows(appointment)
        rows["Location"] = location
        rows["Staff Member"] = _name(context.get("staff"), appointment.staff)
        lead = "soon" if timeframe == "soon" else f"in {timeframe}"
        body = (
            "<h1>Appointment Reminder</h1>" + greeting
            + f"<p>This is a reminder that you have an appointment {escape(lead)}:</p>"
            + _details(rows)
            + (
                f"<p><strong>Additional Information:</strong> {escape(appointment.description)}</p>"
                if appointment.description else ""
            )
            + "<p>If you need to reschedule or cancel, please do so as soon as possible.</p>"
            + _button(_appointment_url(appointment), "View Appointment")
        )

    else:
        raise ValueError(f"Unknown notification kind: {kind}")

    html_content = (
        '<html><body style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">'
        f"{body}<p>{SIGNATURE}</p></body></html>"
    )
    return subject, html_content, _to_text(html_content)


def _to_text(html_content: str) -> str:
    """Plain-text fallback: tags stripped, list items on their own lines."""
    text = re.sub(r"<(br|/p|/li|/h1)>", "\n", html_content)
    text = re.sub(r"<[^>]+>", "", text)
    return "\n".join(unescape(line.strip()) for line in text.splitlines() if line.strip())
