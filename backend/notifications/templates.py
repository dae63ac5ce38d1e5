"""
HTML bodies for alert and task-completion emails.
"""

import json
from html import escape
from typing import Any

from db.domain import Alert, ScheduledTask, TaskExecution, TaskRunStatus

SEVERITY_STYLES = {
    "critical": {"background": "#fef2f2", "border": "#dc2626"},
    "warning": {"background": "#fff7ed", "border": "#f59e0b"},
    "info": {"background": "#eff6ff", "border": "#2563eb"},
}


def _humanize(value: str) -> str:
    return value.replace("_", " ").title()


def _pretty(payload: Any) -> str:
    return escape(json.dumps(payload, indent=2, default=str))


def alert_subject(alert: Alert) -> str:
    return f"[{alert.severity.value.upper()}] {alert.title}"


def render_alert_email(alert: Alert, app_url: str) -> str:
    style = SEVERITY_STYLES.get(alert.severity.value, SEVERITY_STYLES["info"])
    triggered = alert.triggered_at.strftime("%Y-%m-%d %H:%M") if alert.triggered_at else ""
    details = f'<p><strong>Details:</strong></p><pre>{_pretty(alert.metadata)}</pre>' if alert.metadata else ""
    return f"""
    <div style="font-family: Inter, Arial, sans-serif; max-width: 600px; margin: 0 auto;">
      <div style="background: {style['background']}; border-left: 4px solid {style['border']};
                  padding: 20px; border-radius: 0 8px 8px 0;">
        <h2 style="margin: 0 0 10px 0; color: #1e293b;">{escape(alert.title)}</h2>
        <p style="margin: 0; color: #334155; line-height: 1.6;">{escape(alert.message)}</p>
      </div>
      <div style="padding: 20px; background: #f8fafc; margin-top: 10px;">
        <p><strong>Alert Type:</strong> {_humanize(alert.alert_type.value)}</p>
        <p><strong>Severity:</strong> {alert.severity.value.upper()}</p>
        <p><strong>Triggered:</strong> {triggered}</p>
        {details}
      </div>
      <div style="padding: 20px; text-align: center;">
        <a href="{app_url.rstrip('/')}/alerts/{alert.alert_id}"
           style="background: #4f46e5; color: white; padding: 10px 20px;
                  border-radius: 8px; text-decoration: none; font-weight: 500;">
          View Alert
        </a>
      </div>
    </div>
    """


def task_subject(task: ScheduledTask, execution: TaskExecution) -> str:
    outcome = "succeeded" if execution.status == TaskRunStatus.SUCCESS else "FAILED"
    return f"Scheduled Task {outcome}: {task.name}"


def render_task_email(task: ScheduledTask, execution: TaskExecution) -> str:
    completed = execution.completed_at.strftime("%Y-%m-%d %H:%M:%S") if execution.completed_at else ""
    output = f"<p><strong>Output:</strong></p><pre>{_pretty(execution.output)}</pre>" if execution.output else ""
    error = (
        f'<p style="color: #dc2626;"><strong>Error:</strong> {escape(execution.error)}</p>'
        if execution.error
        else ""
    )
    return f"""
    <div style="font-family: Inter, Arial, sans-serif; padding: 20px;">
      <h2>{escape(task_subject(task, execution))}</h2>
      <p><strong>Task:</strong> {escape(task.name)}</p>
      <p><strong>Type:</strong> {_humanize(task.task_type.value)}</p>
      <p><strong>Status:</strong> {execution.status.value.upper()}</p>
      <p><strong>Started:</strong> {execution.started_at.strftime("%Y-%m-%d %H:%M:%S")}</p>
      <p><strong>Completed:</strong> {completed}</p>
      <p><strong>Duration:</strong> {execution.duration_ms}ms</p>
      {output}
      {error}
    </div>
    """
