from __future__ import annotations

import logging
import os

from dotenv import load_dotenv
from fastapi import FastAPI

from mctrl import __version__
from mctrl.api.routes import router
from mctrl.singleton import init_switcher

# Local runs keep their settings in .env; real environment variables win.
load_dotenv(override=False)

app = FastAPI(title="mctrl", version=__version__)
app.include_router(router)
# Configure logging
logging.basicConfig(level=os.environ.get("MCTRL_LOG_LEVEL", "INFO").upper())
logger = logging.getLogger(__name__)


@app.on_event("startup")
async def _startup() -> None:
    switcher = init_switcher()
    logger.info("mctrl %s ready; RCON at %s:%s", __version__, *switcher.session.address)


@app.get("/info")
async def info() -> dict[str, str]:
    return {"name": "mctrl", "version": __version__}


# Run directly with: python -m mctrl.main (or: uvicorn mctrl.main:app)
if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "mctrl.main:app",
        host=os.environ.get("MCTRL_HTTP_HOST", "127.0.0.1"),
        port=int(os.environ.get("MCTRL_HTTP_PORT", "8000")),
    )
