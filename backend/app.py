import os
from pathlib import Path

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from backend import state
from backend.routes import router
from trpg_session.session import SessionStateError

load_dotenv(Path(__file__).parent.parent / ".env")

DEFAULT_DATA_DIR = Path(__file__).parent.parent / "data"


def create_app(data_dir: Path | None = None) -> FastAPI:
    resolved = data_dir or Path(os.getenv("TRPG_DATA_DIR", str(DEFAULT_DATA_DIR)))
    state.init_state(resolved)

    app = FastAPI(title="TRPG Session")
    app.include_router(router, prefix="/api")

    @app.exception_handler(state.NoActiveSession)
    async def no_session(request: Request, exc: state.NoActiveSession):
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(SessionStateError)
    async def illegal_transition(request: Request, exc: SessionStateError):
        return JSONResponse(status_code=409, content={"detail": str(exc)})

    return app


# Default app instance for uvicorn (uses TRPG_DATA_DIR env var or default)
app = create_app()
