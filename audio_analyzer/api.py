"""HTTP submission and status API."""

import asyncio
import hmac
import logging
import threading
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, Dict, List, Literal, Optional

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from .config import Config, configure_logging, configure_threads
from .context import AnalyzerContext
from .dispatcher import Dispatcher
from .errors import AnalysisError, InvalidInput, JobTimeout
from .models import Job, JobState
from .service import QueueConsumer
from .store import JobQueue, ResultStore

logger = logging.getLogger('audio-analyzer.api')

MAX_BATCH_SIZE = 100


@dataclass
class ApiRuntime:
    """Everything the routes need, attached to app.state."""

    config: Config
    dispatcher: Dispatcher
    store: ResultStore
    queue: JobQueue
    model_names: List[str]


class AnalyzeRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    source_refs: List[str] = Field(alias='sourceRefs', min_length=1, max_length=MAX_BATCH_SIZE)
    mode: Literal['sync', 'queued'] = 'sync'


def get_runtime(request: Request) -> ApiRuntime:
    runtime = getattr(request.app.state, 'runtime', None)
    if runtime is None:
        raise RuntimeError("analyzer runtime not initialized")
    return runtime


def require_api_key(
    request: Request,
    x_api_key: Optional[str] = Header(default=None),
    authorization: Optional[str] = Header(default=None),
) -> None:
    expected = get_runtime(request).config.api_key
    if not expected:
        return
    supplied = x_api_key
    if not supplied and authorization and authorization.lower().startswith('bearer '):
        supplied = authorization[7:].strip()
    if not supplied or not hmac.compare_digest(supplied.encode(), expected.encode()):
        raise HTTPException(status_code=401, detail="Missing or invalid API key")


router = APIRouter()


def _job_entry(job: Job, outcome: Any) -> Dict[str, Any]:
    entry: Dict[str, Any] = {'sourceRef': job.source_ref, 'taskKey': job.task_key}
    if isinstance(outcome, AnalysisError):
        state = JobState.TIMED_OUT if isinstance(outcome, JobTimeout) else JobState.FAILED
        entry.update({'state': state.value, 'result': None, 'error': outcome.to_dict()})
    else:
        entry.update({'state': JobState.COMPLETED.value, 'result': outcome.to_dict(), 'error': None})
    return entry


@router.get('/health', tags=['system'])
async def health(runtime: ApiRuntime = Depends(get_runtime)) -> Dict[str, Any]:
    stats = runtime.dispatcher.stats()
    return {
        'status': 'ok',
        'models': runtime.model_names,
        'maxConcurrentWorkers': runtime.dispatcher.max_workers,
        'active': stats.active,
        'pending': stats.pending,
    }


@router.post('/analyze', tags=['jobs'], dependencies=[Depends(require_api_key)])
async def analyze(body: AnalyzeRequest, runtime: ApiRuntime = Depends(get_runtime)):
    """Analyze a batch of sources, waiting for results (sync) or queueing them."""
    try:
        jobs = [Job.create(ref) for ref in body.source_refs]
    except InvalidInput as e:
        raise HTTPException(status_code=400, detail=e.detail) from e

    try:
        if body.mode == 'queued':
            for job in jobs:
                runtime.queue.enqueue(job)
            return JSONResponse(status_code=202, content={'jobs': [
                {'sourceRef': job.source_ref, 'taskKey': job.task_key, 'state': JobState.QUEUED.value}
                for job in jobs
            ]})

        futures = [runtime.dispatcher.submit(job.source_ref) for job in jobs]
        outcomes = await asyncio.gather(
            *(asyncio.wrap_future(future) for future in futures),
            return_exceptions=True,
        )
    except Exception as e:
        logger.error(f"Error handling analyze request: {e}")
        raise HTTPException(status_code=500, detail="Internal Server Error") from e

    for outcome in outcomes:
        if isinstance(outcome, BaseException) and not isinstance(outcome, AnalysisError):
            logger.error(f"Unexpected job error: {outcome!r}")
            raise HTTPException(status_code=500, detail="Internal Server Error")
    return {'results': [_job_entry(job, outcome) for job, outcome in zip(jobs, outcomes)]}


@router.get('/status/{task_key:path}', tags=['jobs'], dependencies=[Depends(require_api_key)])
async def status(task_key: str, runtime: ApiRuntime = Depends(get_runtime)) -> Dict[str, Any]:
    try:
        record = runtime.store.status(task_key)
    except AnalysisError as e:
        logger.error(f"Status lookup failed for {task_key}: {e}")
        raise HTTPException(status_code=500, detail="Internal Server Error") from e
    if record is None:
        raise HTTPException(status_code=404, detail="job not found")
    return record


async def _validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    problems = '; '.join(
        f"{'.'.join(str(part) for part in err.get('loc', ()))}: {err.get('msg')}"
        for err in exc.errors()
    )
    return JSONResponse(status_code=400, content={'detail': problems or 'Invalid request'})


def _start_runtime(config: Config, consume: bool):
    context = AnalyzerContext.create(config)
    dispatcher = context.build_dispatcher()
    consumer = None
    if consume:
        consumer = QueueConsumer(dispatcher, context.queue, poll_timeout=config.poll_timeout,
                                 control_client=context.redis, drain_on_stop=False)
        threading.Thread(target=consumer.start, name='queue-consumer', daemon=True).start()
    runtime = ApiRuntime(
        config=config,
        dispatcher=dispatcher,
        store=context.store,
        queue=context.queue,
        model_names=list(context.models),
    )
    return context, consumer, runtime


def create_app(runtime: Optional[ApiRuntime] = None, config: Optional[Config] = None,
               consume: bool = False) -> FastAPI:
    """
    Build the API application.

    With an explicit `runtime` the app uses it as-is; otherwise the lifespan
    loads models and connects to Redis before serving requests.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        if runtime is not None:
            app.state.runtime = runtime
            yield
            return

        settings = config or Config.from_env()
        configure_threads(settings.threads_per_worker)
        configure_logging(settings.log_level)
        if not settings.api_key:
            logger.warning("API_KEY not set - submission endpoints are unauthenticated")
        context, consumer, app.state.runtime = _start_runtime(settings, consume)
        logger.info(f"API ready with {len(context.models)} models")
        try:
            yield
        finally:
            if consumer is not None:
                consumer.stop()
                consumer.wait_stopped(settings.poll_timeout * 2 + 1)
            app.state.runtime.dispatcher.shutdown(wait=True, timeout=settings.job_timeout_seconds)
            context.close()
            logger.info("API stopped")

    application = FastAPI(title="Audio Analyzer", lifespan=lifespan)
    application.add_exception_handler(RequestValidationError, _validation_error)
    application.include_router(router)
    if runtime is not None:
        application.state.runtime = runtime
    return application
