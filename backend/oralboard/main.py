from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from .api.routes import api_router
from dotenv import load_dotenv
import logging
import pathlib

# repo-root .env wins over one in the working directory
env_path = pathlib.Path(__file__).resolve().parents[2] / ".env"
load_dotenv(env_path if env_path.exists() else None)

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[logging.StreamHandler()],
)

WEBHOOK_PATH = "/api/elevenlabs/webhook"


class PathExemptCORSMiddleware(CORSMiddleware):
    """CORSMiddleware that leaves some paths alone; those routes answer preflights and set headers themselves."""

    def __init__(self, app, exempt_paths=(), **kwargs) -> None:
        super().__init__(app, **kwargs)
        self.exempt_paths = set(exempt_paths)

    async def __call__(self, scope, receive, send) -> None:
        if scope["type"] == "http" and scope["path"].rstrip("/") in self.exempt_paths:
            await self.app(scope, receive, send)
            return
        await super().__call__(scope, receive, send)


app = FastAPI(title="Oral Board Voice Backend")

app.add_middleware(
    PathExemptCORSMiddleware,
    exempt_paths=[WEBHOOK_PATH],
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(api_router, prefix="/api")


@app.get("/")
async def root():
    return {"status": "ok"}
