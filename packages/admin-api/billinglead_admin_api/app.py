import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, File, Form, HTTPException, Request, UploadFile
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from billinglead_common.config import ApiSettings, DatabaseSettings
from billinglead_common.models import (
    LeadProvisionResult,
    RowsUploadRequest,
    SaveLeadsRequest,
    SyncRequest,
    SyncSummary,
    UploadSummary,
)
from billinglead_common.storage import StorageClient
from billinglead_npi_puller.npi_api_client import NPIClient
from billinglead_npi_puller.npi_file_upload import UploadRejectedError
from billinglead_npi_puller.service import IngestionService

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    storage = StorageClient(DatabaseSettings.from_environment())
    await storage.open()
    app.state.storage = storage
    try:
        yield
    finally:
        await storage.close()


app = FastAPI(
    title="Billing Lead Admin API",
    description="Provider sync and bulk ingestion for the billing lead app",
    version="0.1.0",
    lifespan=lifespan,
)


def get_storage(request: Request) -> StorageClient:
    return request.app.state.storage


def get_npi_client() -> NPIClient:
    return NPIClient()


def get_api_settings() -> ApiSettings:
    return ApiSettings.from_environment()


def get_service(
    storage: StorageClient = Depends(get_storage),
    client: NPIClient = Depends(get_npi_client),
    api_settings: ApiSettings = Depends(get_api_settings),
) -> IngestionService:
    return IngestionService(storage, client=client, api_settings=api_settings)


@app.exception_handler(UploadRejectedError)
async def upload_rejected_handler(request: Request, exc: UploadRejectedError):
    return JSONResponse(status_code=400, content={"success": False, "error": str(exc)})


@app.exception_handler(SQLAlchemyError)
async def storage_error_handler(request: Request, exc: SQLAlchemyError):
    logger.exception("Storage failure on %s", request.url.path)
    return JSONResponse(status_code=500, content={"success": False, "error": f"Database error: {exc.__class__.__name__}"})


@app.get("/health")
def health():
    """Health check endpoint."""
    return {"ok": True, "service": "admin-api"}


@app.post("/sync", response_model=SyncSummary, response_model_exclude_none=True)
async def sync_providers(body: SyncRequest, service: IngestionService = Depends(get_service)):
    """Pull the next slice of providers for a search from the NPPES registry."""
    return await service.sync_from_registry(body)


@app.post("/upload", response_model=UploadSummary, response_model_exclude_none=True)
async def upload_providers(
    file: UploadFile = File(...),
    create_leads_for_existing: bool = Form(False),
    service: IngestionService = Depends(get_service),
):
    """Import a .csv/.tsv/.txt, .xlsx/.xls, or a .zip of delimited files."""
    content = await file.read()
    return await service.ingest_upload(file.filename or "", content, create_leads_for_existing)


@app.post("/upload/rows", response_model=UploadSummary, response_model_exclude_none=True)
async def upload_rows(body: RowsUploadRequest, service: IngestionService = Depends(get_service)):
    return await service.ingest_rows(body.rows)


@app.post("/leads/save-all", response_model=LeadProvisionResult)
async def save_leads(body: SaveLeadsRequest, service: IngestionService = Depends(get_service)):
    if not body.save_all and body.provider_ids is None:
        raise HTTPException(status_code=400, detail="Invalid provider IDs")
    return await service.save_leads(body.provider_ids, save_all=body.save_all)
