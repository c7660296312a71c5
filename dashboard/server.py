"""ML Job Crawler Dashboard — FastAPI backend with live run streaming."""

import json
import logging
import os
from pathlib import Path
from typing import Any

import uvicorn
from fastapi import Body, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse

from ml_job_crawler import CrawlService, InvalidRequest, RunNotFound, RunRegistry, load_config
from ml_job_crawler.runs import Subscription

logger = logging.getLogger("dashboard")

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------
CONFIG_PATH = os.environ.get("ML_JOB_CRAWLER_CONFIG")
PORT = int(os.environ.get("DASHBOARD_PORT", "8899"))

config = load_config(Path(CONFIG_PATH) if CONFIG_PATH else None)
registry = RunRegistry(max_events=config.runs.max_events)
service = CrawlService(registry, config)

app = FastAPI(title="ML Job Crawler Dashboard")
app.add_middleware(CORSMiddleware, allow_origins=["*"], allow_methods=["*"], allow_headers=["*"])

_SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


# ---------------------------------------------------------------------------
# Streaming helper
# ---------------------------------------------------------------------------
async def _event_stream(subscription: Subscription):
    """Yield SSE frames until the run ends or the client goes away."""
    try:
        async for message in subscription:
            yield f"data: {json.dumps(message)}\n\n"
    finally:
        subscription.close()


# ---------------------------------------------------------------------------
# Routes — API: Crawl runs
# ---------------------------------------------------------------------------
@app.post("/api/crawl/start")
async def start_crawl(payload: Any = Body(default=None)):
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        return JSONResponse({"error": "Invalid payload"}, 400)
    try:
        run = service.start(payload.get("mode", "standard"), payload.get("llmToken"))
    except InvalidRequest as exc:
        logger.info("Rejected crawl start: %s", exc)
        return JSONResponse({"error": str(exc)}, 400)
    return JSONResponse({"runId": run.id}, 202)


@app.get("/api/crawl/runs")
async def list_runs():
    return {"runs": [run.summary() for run in service.registry.list_runs()]}


@app.get("/api/crawl/sources")
async def list_sources():
    return {
        "concurrent": service.config.sources.concurrent,
        "sources": [{"name": s.name, "label": s.label} for s in service.sources],
    }


@app.get("/api/crawl/events/{run_id}")
async def stream_run(run_id: str):
    try:
        run = service.registry.get(run_id)
    except RunNotFound:
        return JSONResponse({"error": "Run not found"}, 404)

    subscription = run.subscribe()
    return StreamingResponse(
        _event_stream(subscription),
        media_type="text/event-stream",
        headers=_SSE_HEADERS,
    )


@app.get("/api/crawl/{run_id}")
async def get_run(run_id: str):
    try:
        run = service.registry.get(run_id)
    except RunNotFound:
        return JSONResponse({"error": "Run not found"}, 404)
    return run.snapshot()


# ---------------------------------------------------------------------------
# Entrypoint
# ---------------------------------------------------------------------------
if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
        datefmt="%H:%M:%S",
    )
    # Runs live in process memory, so a single worker and no reload
    uvicorn.run(app, host="0.0.0.0", port=PORT)
