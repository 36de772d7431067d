"""
Application FastAPI principale
"""
from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from contextlib import asynccontextmanager
from urllib.parse import urlparse
import logging
import time

from app.core.config import settings
from app.core.firebase_connector import initialize_firebase
from app.api.v1.api import api_router
from app.computation.errors import ComputationError
from app.computation.orchestrator import ComputationOrchestrator
from app.computation.scheduler import InProcessJobScheduler
from app.repositories.firestore import build_repositories


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Gestion du cycle de vie de l'application"""
    logging.basicConfig(
        level=settings.LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logging.info("Starting %s v%s (debug=%s)", settings.APP_NAME, settings.APP_VERSION, settings.DEBUG)

    # Repositories may be injected beforehand (tests); otherwise use Firestore
    if getattr(app.state, "repos", None) is None:
        initialize_firebase()
        app.state.repos = build_repositories()

    orchestrator = ComputationOrchestrator(
        app.state.repos,
        batch_size=settings.COMPUTATION_BATCH_SIZE,
        flush_threshold=settings.COMPUTATION_FLUSH_THRESHOLD,
        list_limit=settings.SUMMARY_LIST_LIMIT,
    )
    scheduler = InProcessJobScheduler(
        orchestrator,
        concurrency=settings.COMPUTATION_CONCURRENCY,
        max_retries=settings.COMPUTATION_MAX_RETRIES,
    )
    scheduler.start()
    app.state.scheduler = scheduler

    yield

    await scheduler.stop()
    logging.info("Application stopped")


app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="Moteur de calcul des résultats académiques (GPA/CGPA, statut, reports, feuilles de délibération)",
    lifespan=lifespan,
    docs_url="/api/docs" if settings.DEBUG else None,
    redoc_url="/api/redoc" if settings.DEBUG else None,
)


def _sanitize_origins(origins_list):
    clean = []
    for o in origins_list:
        if not o or o == "*":
            continue
        parsed = urlparse(o)
        if parsed.scheme in ("http", "https") and parsed.netloc:
            clean.append(o.rstrip('/'))
    return list(dict.fromkeys(clean))


if settings.DEBUG:
    origins_to_allow = [
        "http://localhost:3000",
        "http://localhost:5173",
        "http://localhost:8080",
        "http://localhost:8000",
    ]
else:
    origins_to_allow = _sanitize_origins(settings.BACKEND_CORS_ORIGINS)

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins_to_allow,
    allow_origin_regex=r"^https?://(localhost|127\.0\.0\.1)(:[0-9]+)?$",
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "OPTIONS"],
    allow_headers=["*"],
)


@app.middleware("http")
async def add_process_time_header(request: Request, call_next):
    start_time = time.time()
    response = await call_next(request)
    process_time = time.time() - start_time
    response.headers["X-Process-Time"] = str(process_time)
    return response


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={"detail": exc.errors()},
    )


@app.exception_handler(ComputationError)
async def computation_exception_handler(request: Request, exc: ComputationError):
    logging.warning("Computation error on %s: %s", request.url.path, exc.message)
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"detail": exc.to_dict()})


app.include_router(api_router, prefix=settings.API_V1_STR)


@app.get("/health", tags=["Monitoring"])
async def health_check():
    """Vérifie que le service est en ligne."""
    return {"status": "healthy"}


@app.get("/")
async def root():
    """Route racine"""
    return {
        "message": f"Bienvenue sur {settings.APP_NAME}",
        "version": settings.APP_VERSION,
        "docs": "/api/docs" if settings.DEBUG else "disabled",
        "api": settings.API_V1_STR
    }

# Pour lancer le serveur en mode développement :
# uvicorn app.main:app --reload
