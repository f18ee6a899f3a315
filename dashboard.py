# dashboard.py
"""Read-only web view of job state.

    uvicorn --factory dashboard:app_from_env
"""
import html
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.responses import HTMLResponse, JSONResponse, PlainTextResponse

from jobs import JobManager, render_job
from legacy import LegacyFileReader, get_prompts_dir
from models import PROVIDERS
from storage import JobStore

RECENT_LIMIT = 50

# ---------- Shared UI ----------
BASE_STYLE = """
  body { font-family: Arial, sans-serif; margin: 0; background: #f9f9f9; color: #333; }
  h1 { background: #2196F3; color: white; padding: 15px; margin: 0; }
  h2 { margin-top: 30px; color: #2196F3; }
  .container { padding: 20px; }
  .navbar { background: #1976D2; padding: 10px 20px; display: flex; gap: 20px; }
  .navbar a { color: white; text-decoration: none; font-weight: bold; }
  .navbar a:hover { text-decoration: underline; }
  table { border-collapse: collapse; width: 100%; margin-top: 10px; background: white; }
  th, td { border: 1px solid #ddd; padding: 8px; text-align: left; }
  th { background-color: #2196F3; color: white; }
  tr:nth-child(even) { background-color: #f2f2f2; }
  a { color: #1976D2; }
  .cards { display: grid; grid-template-columns: repeat(auto-fit,minmax(220px,1fr)); gap: 16px; margin-top: 20px; }
  .card { background: white; border: 1px solid #ddd; border-radius: 6px; padding: 12px; }
  .muted { color: #555; }
"""


def page(title: str, body_html: str) -> str:
    return f"""
    <html>
    <head>
      <title>{html.escape(title)}</title>
      <style>{BASE_STYLE}</style>
    </head>
    <body>
      <h1>{html.escape(title)}</h1>
      <div class="navbar">
        <a href="/">🏠 Jobs</a>
        <a href="/metrics">📈 Metrics</a>
        <a href="/summary">📝 Summary</a>
      </div>
      <div class="container">
        {body_html}
      </div>
    </body>
    </html>
    """


def _esc(value) -> str:
    return html.escape("-" if value is None or value == "" else str(value))


def create_app(store: JobStore, manager: JobManager) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app):
        yield
        store.close()

    app = FastAPI(title="jobctl dashboard", lifespan=lifespan)

    # ---------- Home ----------
    @app.get("/", response_class=HTMLResponse)
    def home():
        jobs = []
        for provider in PROVIDERS:
            jobs.extend(manager.collect_jobs(provider, "all"))
        jobs.sort(key=lambda j: j.spawned_at or "", reverse=True)
        jobs = jobs[:RECENT_LIMIT]

        body = """
        <h2>Recent jobs</h2>
        <table>
          <tr><th>Provider</th><th>ID</th><th>Slug</th><th>Status</th><th>Model</th><th>Role</th><th>Spawned</th><th>PID</th></tr>
        """
        for j in jobs:
            link = f"/job/{j.provider}/{j.job_id}"
            body += (
                f"<tr><td>{_esc(j.provider)}</td><td><a href='{link}'>{_esc(j.job_id)}</a></td>"
                f"<td>{_esc(j.slug)}</td><td>{_esc(j.status)}</td><td>{_esc(j.model)}</td>"
                f"<td>{_esc(j.agent_role)}</td><td>{_esc(j.spawned_at)}</td><td>{_esc(j.pid)}</td></tr>"
            )
        body += "</table>"
        if not jobs:
            body += "<p class='muted'>No jobs tracked yet.</p>"
        return page("📊 Background Jobs", body)

    # ---------- Metrics ----------
    @app.get("/metrics", response_class=HTMLResponse)
    def metrics_page():
        stats = store.get_job_stats()
        if stats is None:
            return page("📈 Metrics", "<p class='muted'>Job database unavailable.</p>")
        cards = f"""
          <div class="cards">
            <div class="card"><h3>Total</h3><p>{stats.total}</p></div>
            <div class="card"><h3>Active</h3><p>{stats.active}</p></div>
            <div class="card"><h3>Completed</h3><p>{stats.completed}</p></div>
            <div class="card"><h3>Failed</h3><p>{stats.failed}</p></div>
          </div>
          <p class="muted">Tip: Use the CLI "stats" command for scriptable outputs.</p>
        """
        return page("📈 Metrics", cards)

    @app.get("/metrics/json", response_class=JSONResponse)
    def metrics_json():
        stats = store.get_job_stats()
        if stats is None:
            return JSONResponse({"detail": "job database unavailable"}, status_code=503)
        return {"total": stats.total, "active": stats.active, "completed": stats.completed, "failed": stats.failed}

    # ---------- Summary ----------
    @app.get("/summary", response_class=PlainTextResponse)
    def summary():
        return PlainTextResponse(store.get_job_summary_for_precompact() or "No jobs tracked.")

    # ---------- Job detail ----------
    @app.get("/job/{provider}/{job_id}", response_class=HTMLResponse)
    def job_detail(provider: str, job_id: str):
        result = manager.check_job_status(provider, job_id)
        if result.is_error:
            return HTMLResponse(page("❌ Job not found", f"<p>{_esc(result.text)}</p>"), status_code=404)

        job = manager.sources.get(provider, job_id)
        body = f"""
          <h2>Job {_esc(job.job_id)}</h2>
          <div class="cards">
            <div class="card"><b>Status</b><p>{_esc(job.status)}</p></div>
            <div class="card"><b>Provider</b><p>{_esc(job.provider)}</p></div>
            <div class="card"><b>Model</b><p>{_esc(job.model)}</p></div>
            <div class="card"><b>PID</b><p>{_esc(job.pid)}</p></div>
          </div>
          <h3>Details</h3>
          <pre>{html.escape(render_job(job))}</pre>
          <p><a href="/job/{_esc(job.provider)}/{_esc(job.job_id)}/response">⬇ Response</a></p>
        """
        return page(f"🔎 Job {job.job_id}", body)

    @app.get("/job/{provider}/{job_id}/response", response_class=PlainTextResponse)
    def job_response(provider: str, job_id: str):
        if manager.check_job_status(provider, job_id).is_error:
            return PlainTextResponse("(job not found)", status_code=404)
        job = manager.sources.get(provider, job_id)
        response = manager.legacy.read_completed_response(job)
        return PlainTextResponse(response if response is not None else "(no response)")

    return app


def app_from_env() -> FastAPI:
    base_dir = os.environ.get("JOBCTL_BASE_DIR", ".")
    store = JobStore()
    store.init(base_dir)
    manager = JobManager(store, LegacyFileReader(get_prompts_dir(base_dir)))
    return create_app(store, manager)
