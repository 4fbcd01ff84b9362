from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import PlainTextResponse, Response
from pydantic import ValidationError
from ..config import EVENT_PAGE_SIZE
from ..event_models import EventIn, StoredEvent
from ..metrics import Instrumentation, InstrumentedRoute
from ..store import EventStore

router = APIRouter(route_class=InstrumentedRoute)
# The exporter is not instrumented, scrapes would otherwise count themselves
metrics_router = APIRouter(tags=["metrics"])


def get_store(request: Request) -> EventStore:
    return request.app.state.store


def get_instrumentation(request: Request) -> Instrumentation:
    return request.app.state.instrumentation


@router.get("/healthz", response_class=PlainTextResponse)
async def healthz():
    return "ok"


@router.post("/events", response_model=StoredEvent, status_code=201)
async def create_event(request: Request, store: EventStore = Depends(get_store)):
    # Decoded by hand so bad input is a 400 rather than FastAPI's 422
    body = await request.body()
    try:
        candidate = EventIn.model_validate_json(body)
    except ValidationError:
        raise HTTPException(400, detail="invalid json (need type, payload)")
    return store.add(candidate)


@router.get("/events", response_model=list[StoredEvent])
async def list_events(store: EventStore = Depends(get_store)):
    return store.list(EVENT_PAGE_SIZE)


@metrics_router.get("/metrics")
async def metrics(instrumentation: Instrumentation = Depends(get_instrumentation)):
    return Response(content=instrumentation.render(), media_type=instrumentation.content_type)
