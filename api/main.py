from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from starlette.concurrency import run_in_threadpool
from datetime import datetime
from urllib.parse import quote
import io, logging, os, threading

from bid_documents.config import config
from bid_documents.errors import BidGenerationError
from bid_documents.export import render_docx, safe_file_name
from bid_documents.main import BidDocumentPipeline
from bid_documents.schemas import GeneratedDocument, GenerationRequest
from bid_documents.storage import FileStore, LocalFileStore, SupabaseFileStore

logger = logging.getLogger("bid_documents.api")

app = FastAPI(title="BidDocGen API", version="1.0.0")
app.add_middleware(CORSMiddleware,
    allow_origins=os.getenv("CORS_ORIGINS", "http://localhost:5173").split(","),
    allow_methods=["*"], allow_headers=["*"])

_store = None


def get_store() -> FileStore:
    """Supabase when configured, otherwise the local uploads/ folder."""
    global _store
    if _store is None:
        if config.storage.supabase_url and config.storage.supabase_key:
            _store = SupabaseFileStore()
        else:
            _store = LocalFileStore(os.getenv("UPLOAD_DIR", "uploads"))
    return _store


def get_pipeline() -> BidDocumentPipeline:
    return BidDocumentPipeline(get_store())


def _error(exc: BidGenerationError) -> JSONResponse:
    if exc.detail:
        logger.error("%s: %s", type(exc).__name__, exc.detail)
    return JSONResponse({"error": exc.message}, status_code=exc.status_code)


@app.post("/generate-bid-documents")
async def generate_bid_documents(request: Request):
    try:
        body = await request.json()
    except ValueError:
        return JSONResponse({"error": "Тело запроса должно быть JSON."}, status_code=400)
    if not isinstance(body, dict):
        return JSONResponse({"error": "Тело запроса должно быть JSON-объектом."}, status_code=400)
    try:
        gen_request = GenerationRequest.model_validate(body)
    except ValueError as e:
        return JSONResponse({"error": f"Некорректный запрос: {e}"}, status_code=400)

    cancel = threading.Event()
    pipeline = get_pipeline()
    try:
        # sync pipeline, run it off the event loop. cancel is only set in finally,
        # after the call returns or this request task is cancelled; disconnects are not watched
        result = await run_in_threadpool(pipeline.run, gen_request, cancel)
    except BidGenerationError as e:
        return _error(e)
    except Exception as e:
        logger.exception("generate-bid-documents failed")
        return JSONResponse({"error": str(e) or "Unknown error"}, status_code=500)
    finally:
        cancel.set()

    return {"document": result.document.model_dump(), "hasTemplate": result.has_template}


@app.post("/export/docx")
def export_docx(document: GeneratedDocument):
    data = render_docx(document)
    filename = safe_file_name(document.title)
    return StreamingResponse(
        io.BytesIO(data),
        media_type="application/vnd.openxmlformats-officedocument.wordprocessingml.document",
        headers={"Content-Disposition": f"attachment; filename*=UTF-8''{quote(filename)}"},
    )


@app.get("/health")
def health():
    return {"status": "healthy", "timestamp": datetime.now().isoformat()}
