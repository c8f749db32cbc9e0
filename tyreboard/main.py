from fastapi import FastAPI
from fastapi.responses import RedirectResponse
from fastapi.staticfiles import StaticFiles

from tyreboard.routes import api
from tyreboard.routes import config as config_api
from tyreboard.routes import events
from tyreboard.services.artifacts import get_artifact_store

app = FastAPI(title="Tyre Test Run Board")
app.mount("/artifacts", StaticFiles(directory=str(get_artifact_store().root)), name="artifacts")
app.include_router(api.router)
app.include_router(config_api.router)
app.include_router(events.router)


@app.get("/")
async def root() -> RedirectResponse:
    """Send visitors to the project list, the board's entry point."""
    return RedirectResponse(url="/api/projects", status_code=303)
