import logging
from contextlib import asynccontextmanager
from datetime import time

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from attendance_engine.api import attendance as attendance_api
from attendance_engine.api import departments as departments_api
from attendance_engine.core.config import settings

logger = logging.getLogger(__name__)

# department: (check-in, check-out, working hours)
DEFAULT_DEPARTMENT_TIMINGS = {
    "operations": (time(9, 0), time(19, 0), 8),
    "admin": (time(9, 0), time(18, 0), 8),
    "hr": (time(9, 30), time(18, 30), 8),
    "marketing": (time(10, 0), time(19, 0), 8),
    "sales": (time(9, 0), time(19, 0), 8),
    "technical": (time(9, 0), time(18, 0), 8),
    "housekeeping": (time(8, 0), time(17, 0), 8),
}


def init_database():
    """Create tables and seed the standard department timings on startup."""
    from attendance_engine.core.database import engine, Base, SessionLocal
    from attendance_engine import models  # noqa: F401  register tables
    from attendance_engine.models.office import DepartmentTiming

    logger.info("Creating database tables...")
    Base.metadata.create_all(bind=engine)

    if not settings.SEED_DEFAULT_DEPARTMENTS:
        return

    db = SessionLocal()
    try:
        seeded = 0
        for department, (check_in, check_out, hours) in DEFAULT_DEPARTMENT_TIMINGS.items():
            exists = db.query(DepartmentTiming).filter(DepartmentTiming.department == department).first()
            if exists:
                continue
            db.add(DepartmentTiming(
                department=department,
                check_in_time=check_in,
                check_out_time=check_out,
                working_hours=hours,
            ))
            seeded += 1
        db.commit()
        if seeded:
            logger.info(f"Seeded {seeded} department timings")
    except Exception as e:
        logger.error(f"Error seeding department timings: {e}")
        db.rollback()
    finally:
        db.close()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Init the database, then run the auto-checkout scheduler for the app's lifetime."""
    from attendance_engine.core.database import SessionLocal
    from attendance_engine.services.auto_checkout import AutoCheckoutScheduler

    init_database()

    app.state.auto_checkout = None
    if settings.SCHEDULER_ENABLED:
        scheduler = AutoCheckoutScheduler(SessionLocal)
        scheduler.start()
        app.state.auto_checkout = scheduler
    else:
        logger.info("Auto-checkout scheduler disabled (SCHEDULER_ENABLED=false)")

    yield

    if app.state.auto_checkout is not None:
        app.state.auto_checkout.shutdown()


logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

# Disable API docs in production
docs_url = "/docs" if settings.ENVIRONMENT != "production" else None
redoc_url = "/redoc" if settings.ENVIRONMENT != "production" else None

app = FastAPI(
    title=settings.APP_NAME,
    description="Attendance validation and time-accounting API",
    version="1.0.0",
    lifespan=lifespan,
    docs_url=docs_url,
    redoc_url=redoc_url,
)


# Global exception handler - always return JSON (never plain text)
@app.exception_handler(Exception)
async def global_exception_handler(request, exc):
    logger.error(f"Unhandled exception: {exc}", exc_info=exc)
    return JSONResponse(
        status_code=500,
        content={"detail": f"Internal error: {str(exc)}"},
    )


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request, exc):
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail},
    )


app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/health")
def health_check():
    scheduler = getattr(app.state, "auto_checkout", None)
    return {
        "status": "healthy",
        "service": "field-attendance-engine",
        "version": "1.0.0",
        "scheduler_running": bool(scheduler and scheduler.scheduler.running),
    }


app.include_router(attendance_api.router)
app.include_router(departments_api.router)
