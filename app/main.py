from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from app.core.config import settings
from app.core.logging import configure_logging
from app.api.create_session import router as session_router
from app.api.widget import router as widget_router
from app.dependencies import get_controller_registry, get_observability_backend

@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    yield
    get_controller_registry().close_all()
    get_observability_backend().flush()

app = FastAPI(
    title=settings.service_name,
    lifespan=lifespan
)

# CORS middleware - allow the widget host page to call the API
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000", "http://127.0.0.1:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(session_router, prefix="/api")
app.include_router(widget_router, prefix="/api")

@app.get("/health")
async def health():
    return {"status": "ok"}


def run():
    import uvicorn
    uvicorn.run("app.main:app", host=settings.api_host, port=settings.api_port)
