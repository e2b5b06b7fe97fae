import csv
import io
import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import List, Optional, Dict, Any

from fastapi import FastAPI, HTTPException, Query, Depends, Security, Request, UploadFile, File, Form, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import FileResponse, Response, JSONResponse
from fastapi.security import APIKeyHeader
from pydantic import BaseModel, Field

import pdf_export
import transactions as tx
from book import Book
from cache_manager import cache_manager
from chatbot import LibraryChatbot
from circulation import PermissionDenied, STAFF_ROLES
from config import settings
from database import ACTIONS, get_db_connection
from http_client import get_http_client, cleanup_http_client
from library import Library
from llm_service import LLMService, LLMServiceError, RateLimitExceeded
from resources import Resource
from utils.validators import ISBNValidator, TextValidator

logger = logging.getLogger(__name__)

library = Library()
llm_service = LLMService()
chatbot = LibraryChatbot(library, llm_service)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Open the shared HTTP client on startup, close it on shutdown
    await get_http_client()
    try:
        yield
    finally:
        await cleanup_http_client()

app = FastAPI(title=f"{settings.app_name} API", version=settings.app_version, lifespan=lifespan)

# Compress responses larger than 1KB
app.add_middleware(GZipMiddleware, minimum_size=1000)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def add_response_headers(request: Request, call_next):
    response = await call_next(request)

    if request.url.path == "/books" and request.method == "GET":
        response.headers["Cache-Control"] = "private, max-age=30"
    elif request.url.path.startswith("/resources/") and request.url.path.endswith("/file"):
        response.headers["Cache-Control"] = "private, max-age=3600"

    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["X-XSS-Protection"] = "1; mode=block"
    return response


# --- Security ---
api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)
user_id_header = APIKeyHeader(name="X-User-Id", auto_error=False)


def get_current_user(user_id: Optional[str] = Security(user_id_header)) -> str:
    """The acting user, taken from the X-User-Id header."""
    if not user_id or not user_id.strip():
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    user_id = user_id.strip()
    library.ensure_profile(user_id)
    return user_id


def require_staff(user_id: str = Depends(get_current_user)) -> str:
    if library.get_user_role(user_id) not in STAFF_ROLES:
        raise HTTPException(status_code=403, detail="Librarian or admin role required")
    return user_id


def require_admin(user_id: str = Depends(get_current_user)) -> str:
    if library.get_user_role(user_id) != "admin":
        raise HTTPException(status_code=403, detail="Admin role required")
    return user_id


def require_catalog_writer(
    api_key: Optional[str] = Security(api_key_header),
    user_id: Optional[str] = Security(user_id_header),
) -> Optional[str]:
    """Catalogue writes accept the service API key or a staff user."""
    if api_key is not None:
        if api_key == settings.api_key:
            return user_id
        raise HTTPException(status_code=403, detail="Could not validate credentials")
    return require_staff(get_current_user(user_id))


# --- Models ---
class BookModel(BaseModel):
    id: str
    title: str
    author: str | None = None
    isbn: str | None = None
    genre: str | None = None
    description: str | None = None
    count: int = 1
    cover_image_url: str | None = None
    created_at: str | None = None


class BookWithStatusModel(BookModel):
    available: bool
    averageRating: float | None = None
    ratingCount: int = 0


class BookCreateModel(BaseModel):
    title: str = Field(..., min_length=1)
    author: str | None = None
    isbn: str | None = None
    genre: str | None = None
    description: str | None = None
    count: int = Field(default=1, ge=1)
    cover_image_url: str | None = None


class UpdateBookModel(BaseModel):
    title: str | None = None
    author: str | None = None
    isbn: str | None = None
    genre: str | None = None
    description: str | None = None
    count: int | None = Field(default=None, ge=1)
    cover_image_url: str | None = None


class StatsModel(BaseModel):
    total_books: int
    total_copies: int
    unique_authors: int
    total_resources: int
    active_loans: int


class ResourceModel(BaseModel):
    id: str
    name: str
    author: str | None = None
    description: str | None = None
    filename: str | None = None
    filepath: str | None = None
    size: int | None = None
    flipbook_url: str | None = None
    cover_image_url: str | None = None
    uploaded_by: str | None = None
    created_at: str | None = None


class UpdateResourceModel(BaseModel):
    name: str | None = None
    author: str | None = None
    description: str | None = None
    flipbook_url: str | None = None
    cover_image_url: str | None = None


class CirculationResponse(BaseModel):
    success: bool
    message: str
    status: Dict[str, Any] | None = None


class RatingCreateModel(BaseModel):
    rating: int = Field(..., ge=1, le=5)
    comment: str | None = None


class RoleUpdateModel(BaseModel):
    role: str


class ChatMessage(BaseModel):
    sender: str = "user"
    text: str


class ChatRequest(BaseModel):
    message: str = Field(..., min_length=1)
    history: List[ChatMessage] = []


class ChatResponse(BaseModel):
    reply: str
    command: str | None = None


class DescriptionRequest(BaseModel):
    title: str = Field(..., min_length=1)
    author: str | None = None
    kind: str = Field(default="book", description="book | resource")


class CoverRequest(BaseModel):
    title: str = Field(..., min_length=1)
    author: str | None = None
    description: str | None = None


class AITextResponse(BaseModel):
    text: str


class BookContentRequest(BaseModel):
    topic: str = Field(..., min_length=1)


class BookContentResponse(BaseModel):
    title: str
    description: str


class SummaryResponse(BaseModel):
    id: str
    title: str
    summary: str
    generated_at: str


# --- Helpers ---
def _get_book_or_404(book_id: str) -> Book:
    book = library.find_book(book_id)
    if not book:
        raise HTTPException(status_code=404, detail="Book not found.")
    return book


def _get_resource_or_404(resource_id: str) -> Resource:
    resource = library.find_resource(resource_id)
    if not resource:
        raise HTTPException(status_code=404, detail="Resource not found.")
    return resource


def _require_ai() -> None:
    if not settings.enable_ai_features:
        raise HTTPException(status_code=503, detail="AI features are disabled.")


def _ai_error(exc: LLMServiceError) -> HTTPException:
    logger.error(f"AI request failed: {exc}")
    if isinstance(exc, RateLimitExceeded):
        return HTTPException(status_code=429, detail=str(exc))
    return HTTPException(status_code=502, detail=str(exc))


def _csv_response(content: str, prefix: str) -> Response:
    stamp = datetime.now().strftime('%Y%m%d_%H%M%S')
    return Response(
        content=content,
        media_type="text/csv",
        headers={"Content-Disposition": f"attachment; filename={prefix}_{stamp}.csv"},
    )


def _pdf_response(content: bytes, filename: str) -> Response:
    return Response(
        content=content,
        media_type="application/pdf",
        headers={"Content-Disposition": f"attachment; filename={filename}"},
    )


def _circulation_result(ok: bool, user_id: str, book_id: str, success_message: str,
                        failure_message: str) -> CirculationResponse:
    return CirculationResponse(
        success=ok,
        message=success_message if ok else failure_message,
        status=library.get_book_status(user_id, book_id),
    )


# --- Service ---
@app.get("/health")
async def health():
    """Lightweight health check with a quick database query."""
    db_ok = True
    try:
        conn = get_db_connection()
        conn.execute("SELECT 1")
        conn.close()
    except Exception as e:
        logger.error(f"Health check database query failed: {e}")
        db_ok = False
    return {
        "status": "healthy" if db_ok else "degraded",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "total_books": len(library.list_books()) if db_ok else 0,
        "db": db_ok,
        "services": {
            "ai": llm_service.is_available(),
            "chatbot": settings.enable_chatbot,
            "redis": cache_manager.redis_client is not None,
        },
    }


@app.get("/")
def root():
    return {"name": settings.app_name, "version": settings.app_version, "docs": "/docs"}


@app.get("/stats", response_model=StatsModel)
def get_library_stats():
    return StatsModel(**library.get_statistics())


# --- Books ---
@app.get("/books", response_model=List[BookWithStatusModel])
def get_books(
    response: Response,
    q: Optional[str] = Query(None, description="Search query"),
    sort_by: Optional[str] = Query("title", description="Sort field: title|author|created_at"),
    order: Optional[str] = Query("asc", description="Sort order: asc|desc"),
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
):
    """List books with availability and ratings, with search, sorting and paging."""
    if sort_by not in {"title", "author", "created_at"}:
        raise HTTPException(status_code=400, detail="Invalid sort_by. Allowed: title, author, created_at")
    if order not in {"asc", "desc"}:
        raise HTTPException(status_code=400, detail="Invalid order. Allowed: asc, desc")

    books = library.search_books(q) if q else library.list_books()
    books.sort(key=lambda b: (getattr(b, sort_by) or "").lower(), reverse=(order == "desc"))
    response.headers["X-Total-Count"] = str(len(books))
    page = books[offset:offset + limit]
    return [BookWithStatusModel(**item) for item in library.list_books_with_status(page)]


@app.get("/books/{book_id}", response_model=BookWithStatusModel)
def get_book(book_id: str):
    book = _get_book_or_404(book_id)
    return BookWithStatusModel(**library.list_books_with_status([book])[0])


@app.post("/books", response_model=BookModel, status_code=201)
def add_book(payload: BookCreateModel, _writer: Optional[str] = Depends(require_catalog_writer)):
    if not TextValidator.validate_title(payload.title):
        raise HTTPException(status_code=400, detail="Invalid title.")
    if payload.author and not TextValidator.validate_author(payload.author):
        raise HTTPException(status_code=400, detail="Invalid author.")
    if payload.isbn and not ISBNValidator.is_valid_isbn(payload.isbn):
        raise HTTPException(status_code=400, detail="Invalid ISBN.")
    book = Book(
        title=TextValidator.sanitize_text(payload.title),
        author=TextValidator.sanitize_text(payload.author) if payload.author else None,
        isbn=payload.isbn,
        genre=payload.genre,
        description=TextValidator.sanitize_text(payload.description) if payload.description else None,
        count=payload.count,
        cover_image_url=payload.cover_image_url,
    )
    try:
        library.add_book(book)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return BookModel(**book.to_dict())


@app.put("/books/{book_id}", response_model=BookModel)
def update_book(book_id: str, update: UpdateBookModel, _writer: Optional[str] = Depends(require_catalog_writer)):
    if update.isbn and not ISBNValidator.is_valid_isbn(update.isbn):
        raise HTTPException(status_code=400, detail="Invalid ISBN.")
    try:
        book = library.update_book(book_id, **update.model_dump(exclude_none=True))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    if not book:
        raise HTTPException(status_code=404, detail="Book not found.")
    cache_manager.delete(f"summary:book:{book_id}")
    return BookModel(**book.to_dict())


@app.delete("/books/{book_id}")
def delete_book(book_id: str, _writer: Optional[str] = Depends(require_catalog_writer)):
    if not library.remove_book(book_id):
        raise HTTPException(status_code=404, detail="Book not found.")
    cache_manager.delete(f"summary:book:{book_id}")
    return {"message": "Book removed."}


# --- Circulation ---
@app.get("/books/{book_id}/availability")
def get_availability(book_id: str):
    _get_book_or_404(book_id)
    return {"book_id": book_id, "available": library.is_book_available(book_id)}


@app.post("/books/{book_id}/issue", response_model=CirculationResponse)
def issue_book(book_id: str, user_id: str = Depends(get_current_user)):
    _get_book_or_404(book_id)
    ok = library.issue_book(user_id, book_id)
    return _circulation_result(ok, user_id, book_id, "Book issued successfully.",
                               "Book is not available or is already issued to you.")


@app.post("/books/{book_id}/return", response_model=CirculationResponse)
def return_book(book_id: str, user_id: str = Depends(get_current_user)):
    _get_book_or_404(book_id)
    ok = library.return_book(user_id, book_id)
    return _circulation_result(ok, user_id, book_id, "Book returned successfully.",
                               "This book is not issued to you.")


@app.post("/books/{book_id}/renew", response_model=CirculationResponse)
def renew_book(book_id: str, user_id: str = Depends(get_current_user)):
    _get_book_or_404(book_id)
    ok = library.renew_book(user_id, book_id)
    return _circulation_result(
        ok, user_id, book_id, "Book renewed successfully.",
        f"Book cannot be renewed. It must be issued to you and renewed fewer than {settings.max_renewals} times.",
    )


@app.get("/books/{book_id}/status")
def get_book_status(book_id: str, user_id: str = Depends(get_current_user)):
    _get_book_or_404(book_id)
    return library.get_book_status(user_id, book_id)


# --- Ratings ---
@app.get("/books/{book_id}/ratings")
def get_book_ratings(book_id: str):
    _get_book_or_404(book_id)
    return library.get_book_ratings(book_id)


@app.post("/books/{book_id}/ratings", status_code=201)
def rate_book(book_id: str, payload: RatingCreateModel, user_id: str = Depends(get_current_user)):
    _get_book_or_404(book_id)
    try:
        return library.rate_book(user_id, book_id, payload.rating, payload.comment)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@app.get("/books/{book_id}/rating")
def get_rating_summary(book_id: str):
    _get_book_or_404(book_id)
    return library.get_rating_summary(book_id)


# --- Bookmarks ---
@app.post("/books/{book_id}/bookmark", status_code=201)
def add_bookmark(book_id: str, user_id: str = Depends(get_current_user)):
    _get_book_or_404(book_id)
    return library.add_bookmark(user_id, book_id)


@app.delete("/books/{book_id}/bookmark")
def remove_bookmark(book_id: str, user_id: str = Depends(get_current_user)):
    if not library.remove_bookmark(user_id, book_id):
        raise HTTPException(status_code=404, detail="Bookmark not found.")
    return {"message": "Bookmark removed."}


@app.get("/bookmarks")
def get_bookmarks(user_id: str = Depends(get_current_user)):
    return library.get_user_bookmarks(user_id)


@app.get("/bookmarks/status")
def get_bookmark_status(
    book_ids: str = Query("", description="Comma-separated book ids"),
    user_id: str = Depends(get_current_user),
):
    ids = [b.strip() for b in book_ids.split(",") if b.strip()]
    return library.get_bookmark_status_map(user_id, ids)


# --- Resources ---
@app.get("/resources", response_model=List[ResourceModel])
def get_resources(q: Optional[str] = Query(None, description="Search query")):
    resources = library.search_resources(q, limit=None) if q else library.list_resources()
    return [ResourceModel(**r.to_dict()) for r in resources]


@app.get("/resources/{resource_id}", response_model=ResourceModel)
def get_resource(resource_id: str):
    return ResourceModel(**_get_resource_or_404(resource_id).to_dict())


@app.get("/resources/{resource_id}/file")
def get_resource_file(resource_id: str):
    resource = _get_resource_or_404(resource_id)
    path = library.resource_file_path(resource)
    if not path or not os.path.isfile(path):
        raise HTTPException(status_code=404, detail="Resource file not found.")
    return FileResponse(path, media_type="application/pdf", filename=resource.filename)


@app.post("/resources", response_model=ResourceModel, status_code=201)
async def upload_resource(
    file: UploadFile = File(...),
    name: str = Form(...),
    author: Optional[str] = Form(None),
    description: Optional[str] = Form(None),
    flipbook_url: Optional[str] = Form(None),
    cover_image_url: Optional[str] = Form(None),
    user_id: str = Depends(require_staff),
):
    """Upload a PDF resource with its metadata."""
    clean_name = TextValidator.sanitize_text(name)
    if not clean_name:
        raise HTTPException(status_code=400, detail="Resource name is required.")
    content = await file.read()
    if len(content) > settings.max_upload_size:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail=f"File exceeds the maximum size of {settings.max_upload_size} bytes.",
        )
    try:
        stored_name, relative_path = library.store_resource_file(file.filename, content)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    resource = Resource(
        name=clean_name,
        author=author,
        description=description,
        filename=stored_name,
        filepath=relative_path,
        size=len(content),
        flipbook_url=flipbook_url,
        cover_image_url=cover_image_url,
        uploaded_by=user_id,
    )
    try:
        library.add_resource(resource)
    except ValueError as e:
        library.discard_resource_file(relative_path)
        raise HTTPException(status_code=400, detail=str(e))
    return ResourceModel(**resource.to_dict())


@app.put("/resources/{resource_id}", response_model=ResourceModel)
def update_resource(resource_id: str, update: UpdateResourceModel, _user: str = Depends(require_staff)):
    try:
        resource = library.update_resource(resource_id, **update.model_dump(exclude_none=True))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    if not resource:
        raise HTTPException(status_code=404, detail="Resource not found.")
    cache_manager.delete(f"summary:resource:{resource_id}")
    return ResourceModel(**resource.to_dict())


@app.delete("/resources/{resource_id}")
def delete_resource(resource_id: str, _user: str = Depends(require_staff)):
    if not library.remove_resource(resource_id):
        raise HTTPException(status_code=404, detail="Resource not found.")
    cache_manager.delete(f"summary:resource:{resource_id}")
    return {"message": "Resource removed."}


# --- Transactions ---
@app.get("/transactions/me")
def get_my_transactions(user_id: str = Depends(get_current_user)):
    """The user's transactions, newest first, with late fee per row."""
    history = library.get_user_transactions(user_id)
    return tx.transaction_rows(history, library.books_index(), library.profiles_index())


@app.get("/transactions/me/stats")
def get_my_transaction_stats(user_id: str = Depends(get_current_user)):
    history = library.get_user_transactions(user_id)
    stats = tx.personal_stats(history)
    stats["monthlyActivity"] = tx.monthly_activity(history)
    return stats


@app.get("/transactions/me/export.csv")
def export_my_transactions(user_id: str = Depends(get_current_user)):
    history = library.get_user_transactions(user_id)
    content = tx.export_transactions_csv(history, library.books_index(), library.profiles_index())
    return _csv_response(content, "my_transactions")


@app.get("/transactions/me/export.pdf")
def export_my_transactions_pdf(user_id: str = Depends(get_current_user)):
    history = library.get_user_transactions(user_id)
    content = pdf_export.transactions_pdf(history, library.books_index(), library.profiles_index(),
                                          "My Transaction History", generated_for=user_id)
    stamp = datetime.now().strftime('%Y%m%d_%H%M%S')
    return _pdf_response(content, f"my_transactions_{stamp}.pdf")


# --- Admin ---
def _all_transactions(user_id: str) -> List[tx.Transaction]:
    try:
        return library.get_all_transactions(user_id)
    except PermissionDenied as e:
        raise HTTPException(status_code=403, detail=str(e))


@app.get("/admin/transactions")
def get_all_transactions(
    search: str = Query("", description="Matches book title, author or user"),
    action: str = Query("all", description="all | issue | return | renew"),
    user_id: str = Depends(require_staff),
):
    if action not in ("all",) + ACTIONS:
        raise HTTPException(status_code=400, detail=f"Invalid action. Allowed: all, {', '.join(ACTIONS)}")
    history = _all_transactions(user_id)
    books = library.books_index()
    users = library.profiles_index()
    filtered = tx.filter_transactions(history, books, users, search, action)
    # Fees are computed against the full history so returns outside the filter still count
    rows = {row["id"]: row for row in tx.transaction_rows(history, books, users)}
    return [rows[t.id] for t in filtered]


@app.get("/admin/transactions/stats")
def get_admin_transaction_stats(user_id: str = Depends(require_staff)):
    history = _all_transactions(user_id)
    stats = tx.admin_stats(history)
    stats["monthlyActivity"] = tx.monthly_activity(history)
    return stats


@app.get("/admin/transactions/export.csv")
def export_all_transactions(user_id: str = Depends(require_staff)):
    history = _all_transactions(user_id)
    content = tx.export_transactions_csv(history, library.books_index(), library.profiles_index())
    return _csv_response(content, "transactions")


@app.get("/admin/transactions/export.pdf")
def export_all_transactions_pdf(
    search: str = Query("", description="Matches book title, author or user"),
    action: str = Query("all", description="all | issue | return | renew"),
    user_id: str = Depends(require_staff),
):
    if action not in ("all",) + ACTIONS:
        raise HTTPException(status_code=400, detail=f"Invalid action. Allowed: all, {', '.join(ACTIONS)}")
    books = library.books_index()
    users = library.profiles_index()
    history = _all_transactions(user_id)
    filtered = tx.filter_transactions(history, books, users, search, action)
    content = pdf_export.transactions_pdf(history, books, users, "All Library Transactions",
                                          generated_for=user_id, shown=filtered)
    stamp = datetime.now().strftime('%Y%m%d_%H%M%S')
    return _pdf_response(content, f"transactions_{stamp}.pdf")


@app.get("/admin/analytics")
def get_analytics(user_id: str = Depends(require_staff)):
    try:
        return library.get_dashboard(user_id)
    except PermissionDenied as e:
        raise HTTPException(status_code=403, detail=str(e))


@app.get("/admin/users")
def get_users(_user: str = Depends(require_staff)):
    return library.list_profiles()


@app.put("/admin/users/{target_user_id}/role")
def update_user_role(target_user_id: str, payload: RoleUpdateModel, user_id: str = Depends(require_admin)):
    try:
        return library.update_user_role(user_id, target_user_id, payload.role)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except PermissionDenied as e:
        raise HTTPException(status_code=403, detail=str(e))


@app.get("/admin/api-usage")
def get_api_usage_stats(_user: str = Depends(require_staff)):
    return {
        "llm": llm_service.get_usage_stats(),
        "cache": cache_manager.get_stats(),
        "services_available": {
            "ai": llm_service.is_available(),
            "chatbot": settings.enable_chatbot,
        },
    }


# --- AI ---
@app.post("/chat", response_model=ChatResponse)
async def chat(payload: ChatRequest, user_id: str = Depends(get_current_user)):
    _require_ai()
    if not settings.enable_chatbot:
        raise HTTPException(status_code=503, detail="The chat assistant is disabled.")
    history = [m.model_dump() for m in payload.history]
    try:
        reply = await chatbot.respond(payload.message, history, user_id)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return ChatResponse(**reply.to_dict())


@app.post("/ai/description", response_model=AITextResponse)
async def generate_description(payload: DescriptionRequest, _user: str = Depends(require_staff)):
    _require_ai()
    if payload.kind not in ("book", "resource"):
        raise HTTPException(status_code=400, detail="kind must be 'book' or 'resource'")
    try:
        if payload.kind == "resource":
            text = await llm_service.generate_resource_description(payload.title, payload.author)
        else:
            text = await llm_service.generate_book_description(payload.title, payload.author)
    except LLMServiceError as e:
        raise _ai_error(e)
    return AITextResponse(text=text)


@app.post("/ai/cover-description", response_model=AITextResponse)
async def generate_cover_description(payload: DescriptionRequest, _user: str = Depends(require_staff)):
    _require_ai()
    try:
        text = await llm_service.generate_cover_description(payload.title, payload.author)
    except LLMServiceError as e:
        raise _ai_error(e)
    return AITextResponse(text=text)


@app.post("/ai/cover")
async def generate_cover(payload: CoverRequest, _user: str = Depends(require_staff)):
    _require_ai()
    try:
        image = await llm_service.generate_book_cover(payload.title, payload.author, payload.description or "")
    except LLMServiceError as e:
        raise _ai_error(e)
    return {"image": image}


async def _book_content(topic: str) -> Dict[str, str]:
    _require_ai()
    try:
        return await llm_service.generate_book_content(topic)
    except LLMServiceError as e:
        raise _ai_error(e)


@app.post("/ai/book-content", response_model=BookContentResponse)
async def generate_book_content(payload: BookContentRequest, _user: str = Depends(get_current_user)):
    """Invent a title and description for a topic."""
    return BookContentResponse(**await _book_content(payload.topic))


@app.post("/ai/book-content/pdf")
async def generate_book_pdf(payload: BookContentRequest, _user: str = Depends(get_current_user)):
    """Invent a book for a topic and return it as a PDF."""
    content = await _book_content(payload.topic)
    pdf = pdf_export.book_pdf(content["title"], content["description"])
    return _pdf_response(pdf, pdf_export.pdf_filename(content["title"]))


async def _cached_summary(kind: str, item_id: str, title: str, generate) -> SummaryResponse:
    cache_key = f"summary:{kind}:{item_id}"
    cached = cache_manager.get(cache_key)
    if cached:
        return SummaryResponse(**cached)
    _require_ai()
    try:
        summary = await generate(title)
    except LLMServiceError as e:
        raise _ai_error(e)
    result = SummaryResponse(id=item_id, title=title, summary=summary,
                             generated_at=datetime.now(timezone.utc).isoformat())
    cache_manager.set(cache_key, result.model_dump(), ttl_seconds=86400)
    return result


@app.get("/books/{book_id}/summary", response_model=SummaryResponse)
async def get_book_summary(book_id: str):
    book = _get_book_or_404(book_id)
    return await _cached_summary("book", book.id, book.title, llm_service.generate_book_summary)


@app.get("/resources/{resource_id}/summary", response_model=SummaryResponse)
async def get_resource_summary(resource_id: str):
    resource = _get_resource_or_404(resource_id)
    return await _cached_summary("resource", resource.id, resource.name, llm_service.generate_resource_summary)


@app.get("/recommendations")
async def get_recommendations(user_id: str = Depends(get_current_user)):
    """Book recommendations from the user's borrowing history."""
    _require_ai()
    recommendations = await chatbot.recommend_books(user_id)
    return {"recommendations": recommendations}


# --- Export ---
@app.get("/export/json")
def export_books_json():
    data = [b.to_dict() for b in library.list_books()]
    return JSONResponse(
        content=data,
        headers={
            "Content-Disposition": f"attachment; filename=library_export_{datetime.now().strftime('%Y%m%d_%H%M%S')}.json"
        }
    )


@app.get("/export/csv")
def export_books_csv():
    output = io.StringIO()
    writer = csv.DictWriter(output, fieldnames=['id', 'isbn', 'title', 'author', 'genre', 'count'])
    writer.writeheader()
    for book in library.list_books():
        writer.writerow({
            'id': book.id,
            'isbn': book.isbn or "",
            'title': book.title,
            'author': book.author or "",
            'genre': book.genre or "",
            'count': book.count,
        })
    return _csv_response(output.getvalue(), "library_export")
