from __future__ import annotations

import logging
from datetime import datetime

from fastapi import Depends, FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import ORJSONResponse
from prometheus_client import Counter, make_asgi_app
from pydantic import BaseModel

from services.common.store import DocumentStore, MongoDocumentStore, StorageError, connect_mongo

from .config import get_settings
from .reader import ReaderError, drug_history, get_drug, indexer_progress, list_drugs, verify_drug

settings = get_settings()
logger = logging.getLogger(__name__)

READS_TOTAL = Counter(
    'drugtrace_api_reads_total',
    'Reader API lookups by route and result',
    ['route', 'result']
)

app = FastAPI(title=settings.app_name, default_response_class=ORJSONResponse)
app.add_middleware(
    CORSMiddleware,
    allow_origins=[x.strip() for x in settings.cors_origins.split(',') if x.strip()],
    allow_credentials=True,
    allow_methods=['GET'],
    allow_headers=['*']
)
app.mount('/metrics', make_asgi_app())

_store: MongoDocumentStore | None = None


class HistoryEntry(BaseModel):
    eventType: str
    fromAddress: str | None = None
    toAddress: str | None = None
    details: str | None = None
    timestamp: datetime | None = None
    transactionHash: str
    blockNumber: int


class VerifyResponse(BaseModel):
    id: str
    productId: str | None = None
    batchId: str | None = None
    manufacturer: str | None = None
    currentOwner: str | None = None
    status: str | None = None
    history: list[HistoryEntry]


@app.on_event('startup')
async def startup() -> None:
    global _store
    _store = connect_mongo(settings.mongodb_uri, settings.mongodb_database)
    logger.info('reader api connected database=%s', settings.mongodb_database)


@app.on_event('shutdown')
async def shutdown() -> None:
    global _store
    if _store is not None:
        _store.close()
        _store = None


def get_store() -> DocumentStore:
    if _store is None:
        raise HTTPException(status_code=503, detail='document store not connected')
    return _store


def _read(route: str, fn):
    try:
        result = fn()
    except ReaderError as exc:
        READS_TOTAL.labels(route=route, result=str(exc.status_code)).inc()
        if exc.status_code >= 500:
            logger.error('read failed route=%s: %s', route, exc.detail)
        raise HTTPException(status_code=exc.status_code, detail=exc.detail) from exc
    READS_TOTAL.labels(route=route, result='ok').inc()
    return result


@app.get('/health')
async def health() -> dict[str, str]:
    return {'status': 'ok'}


@app.get('/health/ready')
def ready(store: DocumentStore = Depends(get_store)) -> dict[str, str]:
    try:
        store.ping()
    except StorageError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    return {'status': 'ready'}


@app.get('/drugs')
def drugs(
    owner: str | None = Query(default=None),
    manufacturer: str | None = Query(default=None),
    limit: int = Query(default=100, ge=1),
    store: DocumentStore = Depends(get_store)
) -> dict:
    limit = min(limit, settings.max_page_size)
    rows = _read('drugs', lambda: list_drugs(store, owner=owner, manufacturer=manufacturer, limit=limit))
    return {'rows': rows}


@app.get('/drugs/{drug_id}')
def drug(drug_id: str, store: DocumentStore = Depends(get_store)) -> dict:
    return _read('drug', lambda: get_drug(store, drug_id))


@app.get('/drugs/{drug_id}/history')
def history(drug_id: str, store: DocumentStore = Depends(get_store)) -> dict:
    return {'drugId': drug_id, 'rows': _read('history', lambda: drug_history(store, drug_id))}


@app.get('/drugs/{drug_id}/verify', response_model=VerifyResponse)
def verify(drug_id: str, store: DocumentStore = Depends(get_store)) -> dict:
    return _read('verify', lambda: verify_drug(store, drug_id))


@app.get('/indexer/progress')
def progress(store: DocumentStore = Depends(get_store)) -> dict:
    return _read('progress', lambda: indexer_progress(store))


@app.get('/')
async def root() -> dict:
    return {'service': settings.app_name, 'status': 'ok'}
