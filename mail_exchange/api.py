"""
FastAPI application factory for the read-only forwarding dashboard.

The module exposes a `create_app` function that serves the task history and
the configured rules. When an API token is configured the JSON endpoints
require it in the ``X-API-Token`` header; the HTML overview is public.
"""

from html import escape
from typing import AsyncContextManager, Callable, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.responses import HTMLResponse, Response
from fastapi.security import APIKeyHeader
from pydantic import BaseModel

from .core import MailExchangeCore

API_TOKEN_HEADER_NAME = "X-API-Token"
api_key_scheme = APIKeyHeader(name=API_TOKEN_HEADER_NAME, auto_error=False)


async def require_token(request: Request, api_token: str | None = Depends(api_key_scheme)) -> None:
    """Validate the API token carried in the ``X-API-Token`` header.

    If a token has been configured through :func:`create_app` and a request
    provides either a missing or different value, a ``401`` error is raised.
    When no token is configured the dependency is effectively bypassed.
    """
    expected = getattr(request.app.state, "api_token", None)
    if expected is None:
        return
    if not api_token or api_token != expected:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid or missing API token")


auth_dependency = Depends(require_token)


class BasicOkResponse(BaseModel):
    ok: bool
    error: Optional[str] = None


class TaskRecord(BaseModel):
    """One forwarded message as kept in the task history."""
    id: int
    timestamp: str
    subject: str
    sender: str
    matched_tag: str
    recipients: List[str]
    status: str
    error: Optional[str] = None


class RuleRecord(BaseModel):
    tag: str
    recipients: List[str]


PAGE_STYLE = """
    * { box-sizing: border-box; margin: 0; padding: 0; }
    body { font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; background: #f5f5f5; padding: 20px; }
    h1 { color: #333; margin-bottom: 20px; }
    .stats { display: flex; gap: 20px; margin-bottom: 20px; }
    .stat { background: white; padding: 15px 25px; border-radius: 8px; box-shadow: 0 2px 4px rgba(0,0,0,0.1); }
    .stat-value { font-size: 24px; font-weight: bold; color: #2196F3; }
    .stat-label { color: #666; font-size: 14px; }
    table { width: 100%; background: white; border-radius: 8px; box-shadow: 0 2px 4px rgba(0,0,0,0.1); border-collapse: collapse; }
    th, td { padding: 12px 15px; text-align: left; border-bottom: 1px solid #eee; }
    th { background: #fafafa; font-weight: 600; color: #333; }
    .success { color: #4CAF50; }
    .failed { color: #f44336; }
    .tag { background: #e3f2fd; color: #1976D2; padding: 2px 8px; border-radius: 4px; font-size: 12px; }
    .empty { text-align: center; padding: 40px; color: #999; }
"""


def render_dashboard(svc: MailExchangeCore) -> str:
    """Return the HTML overview of the task history."""
    tasks = svc.tasks()
    succeeded = sum(1 for t in tasks if t.status == "success")
    if tasks:
        rows = "".join(
            "<tr>"
            f"<td>{escape(t.timestamp)}</td>"
            f"<td>{escape(t.subject)}</td>"
            f"<td>{escape(t.sender)}</td>"
            f'<td><span class="tag">{escape(t.matched_tag)}</span></td>'
            f"<td>{escape(', '.join(t.recipients))}</td>"
            f'<td class="{escape(t.status)}">{escape(t.status)}{escape(" - " + t.error) if t.error else ""}</td>'
            "</tr>"
            for t in tasks
        )
    else:
        rows = '<tr><td colspan="6" class="empty">No forwarding tasks yet</td></tr>'
    return f"""<!DOCTYPE html>
<html>
<head>
  <meta charset="UTF-8">
  <title>Mail Exchange - Forward Tasks</title>
  <style>{PAGE_STYLE}</style>
</head>
<body>
  <h1>Mail Exchange - Forward Tasks</h1>
  <div class="stats">
    <div class="stat"><div class="stat-value">{len(tasks)}</div><div class="stat-label">Total</div></div>
    <div class="stat"><div class="stat-value success">{succeeded}</div><div class="stat-label">Success</div></div>
    <div class="stat"><div class="stat-value failed">{len(tasks) - succeeded}</div><div class="stat-label">Failed</div></div>
  </div>
  <table>
    <thead><tr><th>Time</th><th>Subject</th><th>From</th><th>Tag</th><th>Recipients</th><th>Status</th></tr></thead>
    <tbody>{rows}</tbody>
  </table>
</body>
</html>"""


def create_app(
    svc: MailExchangeCore,
    api_token: str | None = None,
    lifespan: Callable[[FastAPI], AsyncContextManager] | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Parameters
    ----------
    svc:
        The :class:`mail_exchange.core.MailExchangeCore` whose history and
        rules are exposed.
    api_token:
        Optional secret. When provided, the ``X-API-Token`` header must match
        this value on every JSON endpoint.
    lifespan:
        Optional lifespan context manager for startup/shutdown events.
    """
    api = FastAPI(title="Mail Exchange", lifespan=lifespan)
    api.state.api_token = api_token

    @api.get("/", response_class=HTMLResponse)
    async def dashboard():
        return HTMLResponse(render_dashboard(svc))

    @api.get("/status", response_model=BasicOkResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def health():
        """Return a simple health status payload."""
        return BasicOkResponse(ok=True)

    @api.get("/api/tasks", response_model=List[TaskRecord], dependencies=[auth_dependency])
    async def list_tasks():
        """Forwarded messages, newest first (at most the history size)."""
        return [TaskRecord.model_validate(task.as_dict()) for task in svc.tasks()]

    @api.get("/api/rules", response_model=List[RuleRecord], dependencies=[auth_dependency])
    async def list_rules():
        """Configured forwarding rules, in matching order."""
        return [RuleRecord.model_validate(rule.as_dict()) for rule in svc.rules]

    @api.get("/metrics", dependencies=[auth_dependency])
    async def metrics():
        """Expose Prometheus metrics collected by the pipeline."""
        return Response(content=svc.metrics.generate_latest(), media_type="text/plain; version=0.0.4")

    return api
