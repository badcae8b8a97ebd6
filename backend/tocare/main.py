import asyncio
import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from tocare.api.admin import router as admin_router
from tocare.api.agents import router as agents_router
from tocare.api.conversation import router as conversation_router
from tocare.api.deps import get_llm
from tocare.api.episodes import router as episodes_router
from tocare.api.outreach import router as outreach_router
from tocare.api.tasks import router as tasks_router
from tocare.config import CORS_ORIGINS, LOG_LEVEL, SCHEDULER_ENABLED
from tocare.db.init_db import init_db
from tocare.telephony.scheduler_async import scheduler_loop

logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

app = FastAPI(title="ToCare triage")


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    logger.warning("Validation error: %s for request %s", exc.errors(), request.url)
    return JSONResponse(
        status_code=422,
        content={"detail": exc.errors(), "body": exc.body},
    )


app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(agents_router)
app.include_router(conversation_router)
app.include_router(tasks_router)
app.include_router(episodes_router)
app.include_router(outreach_router)
app.include_router(admin_router)


@app.get("/health")
def health():
    return {"status": "ok"}


@app.on_event("startup")
def on_startup():
    init_db()
    if SCHEDULER_ENABLED:
        asyncio.get_event_loop().create_task(scheduler_loop(get_llm()))
        logger.info("[scheduler] started")
