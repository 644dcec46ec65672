import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, Path, Query, Request, Security
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, ConfigDict, Field

from smart_library import auth, circulation, dashboard
from smart_library.config import settings
from smart_library.database import get_db_connection
from smart_library.errors import LibraryError, NotFoundError, UpstreamError, ValidationError
from smart_library.library import Library
from smart_library.models import User
from smart_library.penalties import annotate
from smart_library.services.http_client import cleanup_http_client, get_http_client

logger = logging.getLogger(__name__)

library = Library()

# SQLite INTEGER ids are signed 64-bit
MAX_ROW_ID = 2**63 - 1


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Shared outbound client for the AI and catalog integrations
    await get_http_client()
    try:
        yield
    finally:
        await cleanup_http_client()


app = FastAPI(title=settings.app_name, version=settings.app_version, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(LibraryError)
async def library_error_handler(request: Request, exc: LibraryError) -> JSONResponse:
    headers = None
    if isinstance(exc, UpstreamError) and exc.retry_after is not None:
        headers = {"Retry-After": str(exc.retry_after)}
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(exc.to_dict(), status_code=exc.status_code, headers=headers)


# --- Security ---
bearer_scheme = HTTPBearer(auto_error=False)


def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Security(bearer_scheme),
) -> User:
    """Dependency resolving the bearer token to an active user."""
    return auth.authenticate(credentials.credentials if credentials else None)


def get_admin_user(user: User = Depends(get_current_user)) -> User:
    return auth.require_admin(user)


# --- Models ---
class RegisterModel(BaseModel):
    name: str = ""
    email: str = ""
    password: str = ""
    role: Optional[str] = None


class LoginModel(BaseModel):
    email: str = ""
    password: str = ""


class BookCreateModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    title: str = ""
    author: str = ""
    category: str = ""
    description: str = ""
    ai_summary: str = Field(default="", alias="aiSummary")
    cover_image: str = Field(default="", alias="coverImage")
    total_copies: Optional[int] = Field(default=None, alias="totalCopies")
    available_copies: Optional[int] = Field(default=None, alias="availableCopies")


class BookUpdateModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    title: Optional[str] = None
    author: Optional[str] = None
    category: Optional[str] = None
    description: Optional[str] = None
    ai_summary: Optional[str] = Field(default=None, alias="aiSummary")
    cover_image: Optional[str] = Field(default=None, alias="coverImage")
    total_copies: Optional[int] = Field(default=None, alias="totalCopies")
    available_copies: Optional[int] = Field(default=None, alias="availableCopies")


class IssueCreateModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    book_id: Optional[int] = Field(default=None, alias="bookId", ge=1, le=MAX_ROW_ID)


class AISummaryRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    book_id: Optional[int] = Field(default=None, alias="bookId", ge=1, le=MAX_ROW_ID)


def _session_payload(message: str, user: User, token: str) -> Dict[str, Any]:
    return {"message": message, "token": token, "user": user.to_dict()}


# --- Health ---
@app.get("/health")
async def health():
    """Liveness probe with a quick database round trip."""
    db_ok = True
    try:
        conn = get_db_connection()
        try:
            conn.execute("SELECT 1")
        finally:
            conn.close()
    except Exception as e:
        logger.error(f"Health check could not reach the database: {e}")
        db_ok = False
    return {
        "status": "healthy" if db_ok else "degraded",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "db": db_ok,
        "services": {"ai_summary": library.summarizer.is_available()},
    }


@app.get("/test")
async def test_route():
    return {"message": "Smart Library API is running"}


# --- Auth ---
@app.post("/api/auth/register", status_code=201)
def register(payload: RegisterModel):
    user, token = auth.register_user(payload.name, payload.email, payload.password, payload.role)
    return _session_payload("User registered successfully", user, token)


@app.post("/api/auth/login")
def login(payload: LoginModel):
    user, token = auth.login(payload.email, payload.password)
    return _session_payload("Login successful", user, token)


# --- Books ---
@app.get("/api/books")
def list_books(
    search: Optional[str] = Query(None),
    category: Optional[str] = Query(None),
    available: bool = Query(False, description="Only books with a free copy"),
) -> List[Dict[str, Any]]:
    return [book.to_dict() for book in library.list_books(search, category, available)]


@app.get("/api/books/{book_id}")
def get_book(book_id: int = Path(..., ge=1, le=MAX_ROW_ID)):
    return library.get_book(book_id).to_dict()


@app.post("/api/books", status_code=201, dependencies=[Depends(get_admin_user)])
def create_book(payload: BookCreateModel):
    if payload.total_copies is None or payload.available_copies is None:
        raise ValidationError("Missing required fields")
    book = library.add_book(
        title=payload.title,
        author=payload.author,
        category=payload.category,
        total_copies=payload.total_copies,
        available_copies=payload.available_copies,
        description=payload.description,
        ai_summary=payload.ai_summary,
        cover_image=payload.cover_image,
    )
    return book.to_dict()


@app.put("/api/books/{book_id}", dependencies=[Depends(get_admin_user)])
def update_book(payload: BookUpdateModel, book_id: int = Path(..., ge=1, le=MAX_ROW_ID)):
    book = library.update_book(book_id, **payload.model_dump(exclude_none=True))
    return book.to_dict()


@app.delete("/api/books/{book_id}", dependencies=[Depends(get_admin_user)])
def delete_book(book_id: int = Path(..., ge=1, le=MAX_ROW_ID)):
    if not library.remove_book(book_id):
        raise NotFoundError("Book not found")
    return {"message": "Book deleted successfully"}


# --- Issues ---
@app.post("/api/issues", status_code=201)
def create_issue(payload: IssueCreateModel, user: User = Depends(get_current_user)):
    if payload.book_id is None:
        raise ValidationError("Valid bookId is required")
    issue = circulation.issue_book(user, payload.book_id)
    return annotate(issue)


@app.get("/api/issues/my")
def my_issues(user: User = Depends(get_current_user)):
    now = datetime.now(timezone.utc)
    return {"issues": [annotate(issue, now) for issue in circulation.list_issues(user)]}


@app.patch("/api/issues/{issue_id}/return")
def return_issue(issue_id: int = Path(..., ge=1, le=MAX_ROW_ID), user: User = Depends(get_current_user)):
    return annotate(circulation.return_book(user, issue_id))


@app.patch("/api/issues/{issue_id}/pay-penalty")
def pay_penalty(issue_id: int = Path(..., ge=1, le=MAX_ROW_ID), admin: User = Depends(get_admin_user)):
    return annotate(circulation.pay_penalty(admin, issue_id))


# --- Dashboard ---
@app.get("/api/dashboard/stats")
def dashboard_stats(user: User = Depends(get_current_user)):
    return dashboard.get_stats(user)


@app.get("/api/dashboard/overdue")
def dashboard_overdue(admin: User = Depends(get_admin_user)):
    return dashboard.get_overdue(admin)


@app.get("/api/dashboard/recent-issues")
def dashboard_recent_issues(admin: User = Depends(get_admin_user)):
    return dashboard.get_recent_issues(admin)


@app.get("/api/dashboard/my-recent-issues")
def dashboard_my_recent_issues(user: User = Depends(get_current_user)):
    return dashboard.get_my_recent_issues(user)


@app.get("/api/dashboard/due-alerts")
def dashboard_due_alerts(user: User = Depends(get_current_user)):
    return dashboard.get_due_alerts(user)


# --- AI ---
@app.post("/api/ai/summary")
async def ai_summary(payload: AISummaryRequest, user: User = Depends(get_current_user)):
    if payload.book_id is None:
        raise ValidationError("Book ID is required")
    result = await library.generate_ai_summary(payload.book_id)
    return result.to_dict()
