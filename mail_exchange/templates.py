"""Rendering of the delivery report mailed back to the original sender.

Edit this module to customise the notification. Functions are pure: they take
an :class:`~mail_exchange.models.OutcomeReport` and return strings.
"""

from __future__ import annotations

from html import escape

from .models import OutcomeReport

BRAND = "Mail Exchange"
SUCCESS_COLOR = "#10B981"
WARNING_COLOR = "#F59E0B"
ERROR_COLOR = "#EF4444"
MUTED_COLOR = "#d1d5db"


def render_subject(report: OutcomeReport) -> str:
    if report.all_success:
        return f"[{BRAND}] Forwarded - {report.subject}"
    return f"[{BRAND}] Partially failed - {report.subject}"


def render_text(report: OutcomeReport) -> str:
    lines = [
        f"  {r.email}: {'delivered' if r.success else 'failed - ' + (r.error or 'unknown error')}"
        for r in report.results
    ]
    details = "\n".join(lines)
    return (
        f"[{BRAND}] Forwarding report\n"
        "\n"
        f"Original subject: {report.subject}\n"
        f"Summary: {report.success_count} delivered / {report.fail_count} failed / {len(report.results)} total\n"
        "\n"
        "Details:\n"
        f"{details}\n"
        "\n"
        f"Duration: {report.duration_ms}ms\n"
        f"Completed: {report.timestamp}"
    )


def _badge(success: bool) -> str:
    if success:
        return (
            '<span style="display:inline-block;padding:4px 10px;background-color:#D1FAE5;'
            'color:#065F46;font-size:12px;font-weight:bold;">&#10003; Delivered</span>'
        )
    return (
        '<span style="display:inline-block;padding:4px 10px;background-color:#FEE2E2;'
        'color:#991B1B;font-size:12px;font-weight:bold;">&#10007; Failed</span>'
    )


def _stat_cell(label: str, value: int, color: str, width: str, last: bool = False) -> str:
    border = "" if last else "border-right:1px solid #e5e7eb;"
    return (
        f'<td width="{width}" align="center" style="padding:12px;{border}">'
        f'<div style="font-size:12px;color:#6b7280;text-transform:uppercase;">{label}</div>'
        f'<div style="font-size:24px;font-weight:bold;color:{color};">{value}</div>'
        "</td>"
    )


def render_html(report: OutcomeReport) -> str:
    theme = SUCCESS_COLOR if report.all_success else WARNING_COLOR
    heading = "Forwarding succeeded" if report.all_success else "Forwarding partially failed"
    rows = []
    for r in report.results:
        error_line = (
            f'<div style="margin-top:4px;font-size:12px;color:#DC2626;">{escape(r.error)}</div>' if r.error else ""
        )
        rows.append(
            "<tr>"
            f'<td style="padding:12px;border-bottom:1px solid #f0f0f0;color:#374151;">{escape(r.email)}{error_line}</td>'
            f'<td style="padding:12px;border-bottom:1px solid #f0f0f0;text-align:right;vertical-align:top;">'
            f"{_badge(r.success)}</td>"
            "</tr>"
        )
    stats = (
        _stat_cell("Total", len(report.results), "#374151", "33%")
        + _stat_cell("Delivered", report.success_count, SUCCESS_COLOR, "33%")
        + _stat_cell("Failed", report.fail_count, ERROR_COLOR if report.fail_count else MUTED_COLOR, "34%", last=True)
    )
    body_rows = "".join(rows)
    return f"""<!DOCTYPE html>
<html>
<head><meta charset="UTF-8"></head>
<body style="margin:0;padding:0;font-family:Arial,sans-serif;">
<table width="100%" cellpadding="0" cellspacing="0" style="background-color:#f3f4f6;">
  <tr>
    <td align="center" style="padding:20px;">
      <table width="600" cellpadding="0" cellspacing="0" style="background-color:#ffffff;border:1px solid #e5e7eb;">
        <tr><td style="height:6px;background-color:{theme};"></td></tr>
        <tr>
          <td style="padding:24px 32px;">
            <h1 style="margin:0 0 8px 0;font-size:20px;color:#111827;">{heading}</h1>
            <p style="margin:0 0 20px 0;color:#6b7280;font-size:14px;">Original subject:
              <span style="color:#111827;font-weight:bold;">{escape(report.subject)}</span></p>
            <table width="100%" cellpadding="0" cellspacing="0" style="background-color:#f9fafb;margin-bottom:24px;">
              <tr>{stats}</tr>
            </table>
            <p style="margin:0 0 12px 0;font-size:14px;color:#4b5563;font-weight:bold;">Delivery details</p>
            <table width="100%" cellpadding="0" cellspacing="0" style="font-size:14px;">
              <tr style="background-color:#f9fafb;">
                <td style="padding:10px 12px;color:#6b7280;font-weight:bold;">Recipient</td>
                <td style="padding:10px 12px;color:#6b7280;font-weight:bold;text-align:right;">Status</td>
              </tr>
              {body_rows}
            </table>
          </td>
        </tr>
        <tr>
          <td style="background-color:#f9fafb;padding:16px 32px;border-top:1px solid #e5e7eb;font-size:12px;color:#9ca3af;text-align:center;">
            <p style="margin:0 0 4px 0;font-weight:bold;">{BRAND}</p>
            <p style="margin:0;">Duration: {report.duration_ms}ms &middot; {escape(report.timestamp)}</p>
          </td>
        </tr>
      </table>
    </td>
  </tr>
</table>
</body>
</html>"""
