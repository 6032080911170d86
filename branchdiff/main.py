from fastapi import FastAPI
from fastapi.responses import RedirectResponse

from branchdiff.routes import api
from branchdiff.routes import config as config_api

app = FastAPI(title="Branchdiff Visual Diff Service")
app.include_router(api.router)
app.include_router(config_api.router)


@app.get("/")
async def root() -> RedirectResponse:
    """Send visitors to the interactive API docs."""
    return RedirectResponse(url="/docs", status_code=303)
