"""
Email Templates for Position Notifications

HTML email bodies for the events the notification system reports. Each
render function returns a (subject, html_body) tuple.
"""

from html import escape
from typing import Any, Dict, List, Tuple

from trader_tony.utils.time_utils import now_utc

CRITICAL_COLOR = "#dc3545"
WARNING_COLOR = "#ffc107"
INFO_COLOR = "#17a2b8"


_STYLE = """
    body { font-family: Arial, sans-serif; color: #333; background: #f4f4f4; margin: 0; }
    .container { max-width: 600px; margin: 20px auto; background: #fff; border-radius: 8px; }
    .header { color: #fff; padding: 16px 20px; }
    .header h1 { margin: 0; font-size: 20px; }
    .content { padding: 24px; }
    .metric { display: flex; justify-content: space-between; padding: 8px 0; border-bottom: 1px solid #eee; }
    .metric-label { font-weight: 600; color: #666; }
    .box { padding: 12px 15px; margin: 12px 0; border-left: 4px solid; }
    .critical-box { background: #f8d7da; border-color: %(critical)s; }
    .alert-box { background: #fff3cd; border-color: %(warning)s; }
    .info-box { background: #d1ecf1; border-color: %(info)s; }
    table { width: 100%%; border-collapse: collapse; }
    th, td { padding: 6px 8px; text-align: left; border-bottom: 1px solid #ddd; }
    .footer { background: #f8f8f8; padding: 12px; text-align: center; font-size: 12px; color: #666; }
""" % {"critical": CRITICAL_COLOR, "warning": WARNING_COLOR, "info": INFO_COLOR}


def _base_template(title: str, content: str, color: str = INFO_COLOR) -> str:
    """Wrap content in the shared layout; color is the header band."""
    sent_at = now_utc().strftime("%Y-%m-%d %H:%M:%S")
    return f"""<!DOCTYPE html>
<html lang="en">
<head><meta charset="UTF-8"><title>{escape(title)}</title><style>{_STYLE}</style></head>
<body>
  <div class="container">
    <div class="header" style="background-color: {color};"><h1>{escape(title)}</h1></div>
    <div class="content">{content}</div>
    <div class="footer">Trader Tony | {sent_at} UTC | automated notification, do not reply</div>
  </div>
</body>
</html>
"""


def _metric(label: str, value: str, css_class: str = "") -> str:
    return f"""
        <div class="metric">
            <span class="metric-label">{escape(label)}:</span>
            <span class="metric-value {css_class}">{escape(str(value))}</span>
        </div>"""


def _short(token_id: str) -> str:
    if len(token_id) <= 12:
        return token_id
    return f"{token_id[:4]}...{token_id[-4:]}"


def render_action_failed_email(failure: Dict[str, Any]) -> Tuple[str, str]:
    """Render email for an action that exhausted its retries."""
    position_id = failure.get("position_id", "UNKNOWN")
    action = failure.get("action", "unknown")
    error = failure.get("error", "Unknown error")

    content = f"""
        <div class="box critical-box">
            <strong>MANUAL INTERVENTION REQUIRED</strong><br>
            An action failed repeatedly and will not be retried automatically.
        </div>
        {_metric('Position', position_id)}
        {_metric('Token', failure.get('token_id', 'UNKNOWN'))}
        {_metric('Action', action)}
        {_metric('Attempts', str(failure.get('attempts', 0)))}
        <h3>Last Error:</h3>
        <div class="box critical-box">
            <code>{escape(str(error))}</code>
        </div>
        <p>Close the position manually or reset its failure counter once the cause is fixed.</p>
    """

    subject = f"ACTION FAILED: {action} on {position_id}"
    return subject, _base_template(subject, content, CRITICAL_COLOR)


def render_entry_failed_email(failure: Dict[str, Any]) -> Tuple[str, str]:
    """Render email for a strategy entry buy that did not complete."""
    token_id = failure.get("token_id", "UNKNOWN")
    strategy_id = failure.get("strategy_id", "UNKNOWN")
    amount_text = f"{failure.get('quote_amount', 0.0):.4f} SOL"
    error = failure.get("error", "Unknown error")

    content = f"""
        <div class="box critical-box">
            <strong>Entry buy failed</strong>
        </div>
        {_metric('Strategy', strategy_id)}
        {_metric('Token', token_id)}
        {_metric('Amount', amount_text)}
        <h3>Error Details:</h3>
        <div class="box critical-box">
            <code>{escape(str(error))}</code>
        </div>
    """

    subject = f"ENTRY FAILED: {strategy_id} into {_short(token_id)}"
    return subject, _base_template(subject, content, CRITICAL_COLOR)


def render_batch_summary_email(priority: str, notifications: List[dict]) -> Tuple[str, str]:
    """
    Render email for a batch of queued notifications.

    Args:
        priority: Priority level value ("warning" or "info")
        notifications: Queued notification dictionaries
    """
    total = len(notifications)

    by_type: Dict[str, int] = {}
    for notif in notifications:
        notif_type = notif.get("type", "Unknown")
        by_type[notif_type] = by_type.get(notif_type, 0) + 1

    summary_rows = "".join(
        f"<tr><td>{notif_type}</td><td style=\"text-align: right;\">{count}</td></tr>"
        for notif_type, count in sorted(by_type.items(), key=lambda x: x[1], reverse=True)
    )

    is_warning = priority.lower() == "warning"
    content = f"""
        <div class="box {'alert-box' if is_warning else 'info-box'}">
            <strong>{total} notification(s) in this batch</strong>
        </div>
        <table>
            <thead>
                <tr><th>Type</th><th style="text-align: right;">Count</th></tr>
            </thead>
            <tbody>
                {summary_rows}
            </tbody>
        </table>
        <h3>Recent Events:</h3>
    """

    for notif in notifications[-10:]:
        content += _metric(
            f"[{notif.get('timestamp', '?')}] {notif.get('type', 'Unknown')}",
            notif.get("message", "No details"),
        )

    if total > 10:
        content += f"<p><em>... and {total - 10} more events</em></p>"

    subject = f"{priority.upper()} Batch: {total} notifications"
    color = WARNING_COLOR if is_warning else INFO_COLOR
    return subject, _base_template(subject, content, color)
