# receipt_scanner/main.py
from __future__ import annotations

import asyncio
import json
from typing import Any, Callable, Dict, List, Optional
from uuid import uuid4

from fastapi import Depends, FastAPI, File, Form, HTTPException, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from starlette.middleware.sessions import SessionMiddleware

from receipt_scanner import auth
from receipt_scanner.auth import get_current_user, google_token_valid
from receipt_scanner.config import Settings, get_settings
from receipt_scanner.errors import (
    DuplicateReceiptError,
    ExtractionError,
    GoogleApiError,
    ImageValidationError,
    NotConfiguredError,
    QueueBusyError,
    ReceiptNotFoundError,
    ReceiptScannerError,
    StoreError,
)
from receipt_scanner.logging_utils import get_logger
from receipt_scanner.schemas import (
    BatchUploadResponse,
    ReceiptData,
    ReceiptPatch,
    ReceiptsView,
    SaveResult,
    SortDirection,
    SortKey,
)
from receipt_scanner.services import db_service, storage_service, viewer_service
from receipt_scanner.services.drive_service import DriveService
from receipt_scanner.services.extraction_service import analyze_receipt
from receipt_scanner.services.image_service import PreparedImage, prepare_image
from receipt_scanner.services.processing_queue import ProcessingQueue, QueueItem
from receipt_scanner.services.receipt_hash import create_receipt_hash
from receipt_scanner.services.sheets_service import SheetsService, spreadsheet_url

log = get_logger(__name__)

_settings = get_settings()

app = FastAPI(title="Receipt Scanner", version="1.0")

app.add_middleware(SessionMiddleware, secret_key=_settings.session_secret)
app.add_middleware(
    CORSMiddleware,
    allow_origins=[_settings.ui_origin],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(auth.router)


# =========================
# Error mapping
# =========================

_STATUS_BY_ERROR = [
    (ImageValidationError, 400),
    (ReceiptNotFoundError, 404),
    (DuplicateReceiptError, 409),
    (QueueBusyError, 409),
    (NotConfiguredError, 503),
    (ExtractionError, 502),
    (GoogleApiError, 502),
    (StoreError, 502),
]


def status_for(e: ReceiptScannerError) -> int:
    for cls, code in _STATUS_BY_ERROR:
        if isinstance(e, cls):
            return code
    return 500


@app.exception_handler(ReceiptScannerError)
async def receipt_scanner_error_handler(request: Request, exc: ReceiptScannerError):
    code = status_for(exc)
    if code >= 500:
        log.error("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=code, content={"detail": str(exc)})


# =========================
# Dependencies (overridden in tests)
# =========================

def get_db(settings: Settings = Depends(get_settings)):
    return db_service.get_client(settings)


def get_vision_client() -> Any:
    # None -> extraction_service builds an OpenAI client from settings
    return None


def get_drive_factory() -> Callable[..., DriveService]:
    return DriveService


def get_sheets_factory() -> Callable[..., SheetsService]:
    return SheetsService


# =========================
# Helpers
# =========================

def _as_bool(value: Optional[str]) -> bool:
    return (value or "").strip().lower() in {"1", "true", "yes", "on"}


async def _read_image(upload: UploadFile, settings: Settings) -> PreparedImage:
    content = await upload.read()
    return await asyncio.to_thread(
        prepare_image, content, upload.filename or "receipt.jpg", upload.content_type, settings
    )


def _parse_receipt_field(raw: str) -> ReceiptData:
    try:
        return ReceiptData.model_validate(json.loads(raw))
    except (ValueError, ValidationError) as e:
        raise HTTPException(status_code=400, detail=f"Invalid receipt data: {e}")


def _find_saved(data: ReceiptData, db_client: Any, settings: Settings) -> Optional[ReceiptData]:
    # the insert's unique constraint still decides when the lookup can't run
    if db_client is None:
        return None
    try:
        return db_service.find_by_hash(create_receipt_hash(data), client=db_client, settings=settings)
    except StoreError as e:
        log.warning("Duplicate pre-check failed: %s", e)
        return None


def save_with_archive(
    data: ReceiptData,
    *,
    image: Optional[PreparedImage],
    ctx: Dict[str, Any],
    settings: Settings,
    db_client: Any,
    archive_to_drive: bool = False,
    log_to_sheets: bool = False,
    make_public: bool = False,
    drive_factory: Callable[..., DriveService] = DriveService,
    sheets_factory: Callable[..., SheetsService] = SheetsService,
) -> SaveResult:
    """
    Duplicate check -> Drive upload (so the link is stored with the row)
    -> insert -> sheet log. Drive and Sheets problems become warnings; they
    never undo the insert.
    """
    existing = _find_saved(data, db_client, settings)
    if existing is not None:
        log.info("Receipt matches saved id=%s; skipping archive and insert", existing.id)
        return SaveResult(status="duplicate", receipt=existing, error=db_service.DUPLICATE_MSG)

    warnings: List[str] = []
    drive_upload = None
    email = ctx.get("email")
    google_ok = google_token_valid(ctx)

    if (archive_to_drive or log_to_sheets) and not google_ok:
        warnings.append("Google session expired; skipped Drive/Sheets. Sign in again to re-enable.")

    if archive_to_drive and google_ok and image is not None:
        try:
            drive = drive_factory(ctx["google_token"], user_key=email, data_dir=settings.data_dir)
            drive_upload = drive.upload_image(
                image.content, image.mime_type, image.filename, data.merchant_name, data.date
            )
        except GoogleApiError as e:
            log.warning("Drive archive failed for %s: %s", image.filename, e)
            warnings.append(f"Drive upload failed: {e}")
        else:
            data = data.model_copy(update={
                "image_url": drive_upload.web_view_link,
                "drive_file_id": drive_upload.file_id,
            })
            if make_public:
                try:
                    drive.make_public(drive_upload.file_id)
                except GoogleApiError as e:
                    warnings.append(f"Could not share the Drive file: {e}")

    result = db_service.save_receipt(data, client=db_client, settings=settings)
    result.drive = drive_upload
    result.warnings = warnings

    if result.status == "saved" and log_to_sheets and google_ok:
        try:
            sheets = sheets_factory(ctx["google_token"], user_key=email, data_dir=settings.data_dir)
            sheets.add_receipt(result.receipt or data, drive_upload.web_view_link if drive_upload else None)
        except GoogleApiError as e:
            log.warning("Sheets log failed: %s", e)
            result.warnings.append(f"Sheets log failed: {e}")
        else:
            result.sheets_logged = True

    return result


# =========================
# Routes
# =========================

@app.get("/")
def root():
    return {"status": "ok", "service": "receipt-scanner"}


@app.post("/receipts/extract", response_model=ReceiptData)
async def extract_receipt(
    file: UploadFile = File(...),
    use_today_date: Optional[str] = Form(None),
    ctx: Dict[str, Any] = Depends(get_current_user),
    settings: Settings = Depends(get_settings),
    vision_client: Any = Depends(get_vision_client),
):
    image = await _read_image(file, settings)
    return await asyncio.to_thread(
        analyze_receipt,
        image.content,
        image.mime_type,
        use_today_date=_as_bool(use_today_date),
        settings=settings,
        client=vision_client,
    )


@app.post("/receipts", response_model=SaveResult)
async def create_receipt(
    receipt: str = Form(...),
    file: Optional[UploadFile] = File(None),
    archive_to_drive: Optional[str] = Form(None),
    log_to_sheets: Optional[str] = Form(None),
    make_public: Optional[str] = Form(None),
    ctx: Dict[str, Any] = Depends(get_current_user),
    settings: Settings = Depends(get_settings),
    db_client: Any = Depends(get_db),
    drive_factory: Callable[..., DriveService] = Depends(get_drive_factory),
    sheets_factory: Callable[..., SheetsService] = Depends(get_sheets_factory),
):
    data = _parse_receipt_field(receipt)
    image = await _read_image(file, settings) if file is not None and file.filename else None

    return await asyncio.to_thread(
        save_with_archive,
        data,
        image=image,
        ctx=ctx,
        settings=settings,
        db_client=db_client,
        archive_to_drive=_as_bool(archive_to_drive),
        log_to_sheets=_as_bool(log_to_sheets),
        make_public=_as_bool(make_public),
        drive_factory=drive_factory,
        sheets_factory=sheets_factory,
    )


@app.post("/upload", response_model=BatchUploadResponse)
async def upload(
    files: List[UploadFile] = File(...),
    use_today_date: Optional[str] = Form(None),
    archive_to_drive: Optional[str] = Form(None),
    log_to_sheets: Optional[str] = Form(None),
    ctx: Dict[str, Any] = Depends(get_current_user),
    settings: Settings = Depends(get_settings),
    db_client: Any = Depends(get_db),
    vision_client: Any = Depends(get_vision_client),
    drive_factory: Callable[..., DriveService] = Depends(get_drive_factory),
    sheets_factory: Callable[..., SheetsService] = Depends(get_sheets_factory),
):
    """Analyze and save every file without a confirmation step."""
    if not files:
        raise HTTPException(status_code=400, detail="No files provided. Send multipart field 'files'.")

    queue = ProcessingQueue()
    queue.add_files([(f.filename or "receipt.jpg", await f.read(), f.content_type) for f in files])
    today = _as_bool(use_today_date)
    prepared: Dict[int, PreparedImage] = {}

    def _analyze(item: QueueItem) -> ReceiptData:
        image = prepare_image(item.content, item.filename, item.mime_type, settings)
        prepared[id(item)] = image
        return analyze_receipt(
            image.content, image.mime_type,
            use_today_date=today, settings=settings, client=vision_client,
        )

    def _save(data: ReceiptData, item: QueueItem) -> SaveResult:
        return save_with_archive(
            data,
            image=prepared.get(id(item)),
            ctx=ctx,
            settings=settings,
            db_client=db_client,
            archive_to_drive=_as_bool(archive_to_drive),
            log_to_sheets=_as_bool(log_to_sheets),
            drive_factory=drive_factory,
            sheets_factory=sheets_factory,
        )

    results = await asyncio.to_thread(queue.run_all, _analyze, _save)
    log.info("Batch processed %d file(s), saved=%s", len(results), queue.has_saved)
    return BatchUploadResponse(
        batch_id=str(uuid4()),
        total=len(files),
        processed=sum(1 for r in results if r.status == "saved"),
        has_saved=queue.has_saved,
        results=results,
    )


@app.get("/receipts", response_model=ReceiptsView)
def list_receipts(
    month: Optional[str] = None,
    search: str = "",
    sort_key: SortKey = "date",
    direction: SortDirection = "desc",
    ctx: Dict[str, Any] = Depends(get_current_user),
    settings: Settings = Depends(get_settings),
    db_client: Any = Depends(get_db),
):
    receipts = db_service.list_receipts(client=db_client, settings=settings)
    return viewer_service.build_view(
        receipts, month=month, search=search, sort_key=sort_key, direction=direction
    )


@app.get("/receipts/{receipt_id}", response_model=ReceiptData)
def get_receipt(
    receipt_id: int,
    ctx: Dict[str, Any] = Depends(get_current_user),
    settings: Settings = Depends(get_settings),
    db_client: Any = Depends(get_db),
):
    return db_service.get_receipt(receipt_id, client=db_client, settings=settings)


@app.patch("/receipts/{receipt_id}", response_model=ReceiptData)
def patch_receipt(
    receipt_id: int,
    patch: ReceiptPatch,
    ctx: Dict[str, Any] = Depends(get_current_user),
    settings: Settings = Depends(get_settings),
    db_client: Any = Depends(get_db),
):
    return db_service.update_receipt(receipt_id, patch, client=db_client, settings=settings)


@app.delete("/receipts/{receipt_id}")
def delete_receipt(
    receipt_id: int,
    ctx: Dict[str, Any] = Depends(get_current_user),
    settings: Settings = Depends(get_settings),
    db_client: Any = Depends(get_db),
):
    db_service.delete_receipt(receipt_id, client=db_client, settings=settings)
    return {"ok": True, "id": receipt_id}


@app.get("/sheets/url")
def sheets_url(
    ctx: Dict[str, Any] = Depends(get_current_user),
    settings: Settings = Depends(get_settings),
):
    sid = storage_service.get_state_value(ctx.get("email") or "", storage_service.SPREADSHEET_ID, settings.data_dir)
    return {"url": spreadsheet_url(sid) if sid else None}


@app.post("/sheets/reset")
def sheets_reset(
    ctx: Dict[str, Any] = Depends(get_current_user),
    settings: Settings = Depends(get_settings),
):
    storage_service.clear_state_key(ctx.get("email") or "", storage_service.SPREADSHEET_ID, settings.data_dir)
    return {"ok": True}
