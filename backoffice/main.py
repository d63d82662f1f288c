from contextlib import asynccontextmanager
import logging
import time

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException

from backoffice.config import settings
from backoffice.core.errors import LifecycleError
from backoffice.db import Base, engine
from backoffice.metrics import flush_lifecycle_metrics
from backoffice.route_logging import OperationRoute
from backoffice.routers import admin, availability, class_templates, classes, contract, vacations
from backoffice.scheduler import start_scheduler, stop_scheduler

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s %(levelname)s %(name)s %(message)s',
)
logger = logging.getLogger('backoffice.request')


@asynccontextmanager
async def lifespan(_: FastAPI):
    Base.metadata.create_all(bind=engine)
    if settings.enable_scheduler:
        start_scheduler()
    yield
    if settings.enable_scheduler:
        stop_scheduler()
    flush_lifecycle_metrics()


app = FastAPI(title=settings.app_name, version='0.1.0', lifespan=lifespan)
app.router.route_class = OperationRoute


@app.exception_handler(LifecycleError)
async def lifecycle_error_handler(request: Request, exc: LifecycleError):
    logger.info(
        'request_rejected path=%s method=%s status_code=%s error=%s',
        request.url.path,
        request.method,
        exc.status_code,
        exc.message,
    )
    return JSONResponse(status_code=exc.status_code, content={'error': exc.message})


@app.exception_handler(HTTPException)
async def http_error_handler(request: Request, exc: HTTPException):
    return JSONResponse(status_code=exc.status_code, content={'error': str(exc.detail)})


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    first = errors[0] if errors else {}
    location = '.'.join(str(part) for part in first.get('loc', ()) if part != 'body')
    message = first.get('msg', 'Invalid request')
    return JSONResponse(status_code=400, content={'error': f'{location}: {message}' if location else message})


@app.exception_handler(SQLAlchemyError)
async def database_error_handler(request: Request, exc: SQLAlchemyError):
    logger.exception('request_db_failure path=%s method=%s', request.url.path, request.method)
    return JSONResponse(status_code=503, content={'error': 'Service temporarily unavailable, please try again'})


@app.middleware('http')
async def slow_request_logger(request: Request, call_next):
    started = time.perf_counter()
    response = await call_next(request)
    duration_ms = (time.perf_counter() - started) * 1000.0
    if duration_ms >= settings.metrics_slow_ms:
        logger.info(
            'request_slow path=%s method=%s status_code=%s duration_ms=%.2f',
            request.url.path,
            request.method,
            response.status_code,
            duration_ms,
        )
    return response


app.include_router(classes.router)
app.include_router(class_templates.router)
app.include_router(admin.router)
app.include_router(availability.router)
app.include_router(contract.router)
app.include_router(vacations.router)


@app.get('/')
def root():
    return {'app': settings.app_name, 'status': 'ok'}


@app.get('/health')
def healthcheck():
    return {'status': 'ok'}
