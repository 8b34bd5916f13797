"""
Lead Import Worker - Process host
Owns the database client and the background scheduler lifecycle
"""
from fastapi import FastAPI, APIRouter, Request
import logging

from database import Database, ensure_indexes
from routers.import_jobs import router as import_jobs_router
from scheduler_worker import WorkerScheduler

# Configure logging
logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)

app = FastAPI(title="Clinic Lead Import Worker")
api_router = APIRouter(prefix="/api")


@api_router.get("/health")
async def health():
    return {"status": "ok"}


@api_router.get("/scheduler")
async def scheduler_info(request: Request):
    return request.app.state.worker_scheduler.info()


api_router.include_router(import_jobs_router)
app.include_router(api_router)


@app.on_event("startup")
async def startup_event():
    """Open the database and start the queue consumers"""
    database = Database()
    db = database.open()
    await ensure_indexes(db)

    worker_scheduler = WorkerScheduler(db)
    worker_scheduler.start()

    app.state.database = database
    app.state.worker_scheduler = worker_scheduler


@app.on_event("shutdown")
async def shutdown_event():
    """Stop the scheduler and close DB on shutdown"""
    worker_scheduler = getattr(app.state, "worker_scheduler", None)
    if worker_scheduler is not None:
        worker_scheduler.stop()

    database = getattr(app.state, "database", None)
    if database is not None:
        database.close()
