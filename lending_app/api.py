import hmac
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Callable, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request, Response, Security
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import APIKeyHeader, HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, Field

from . import __version__
from .auth import AuthService
from .catalog import Catalog
from .config import Settings, configure_logging, settings as default_settings
from .database import Database
from .errors import LendingError
from .lending import LendingEngine
from .models import Book, LoanRecord, User, utcnow
from .services.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)

API_PREFIX = "/api/v1"


# --- Models ---
class UserModel(BaseModel):
    id: int
    email: str
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class AuthRequest(BaseModel):
    email: str
    password: str


class AuthResponse(BaseModel):
    token: str
    user: UserModel


class BookModel(BaseModel):
    id: int
    title: str
    author: str
    isbn: str
    quantity: int
    category: str
    available: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class BookCreateModel(BaseModel):
    title: str
    author: str
    isbn: str
    quantity: int = Field(default=1, ge=1, description="Number of copies owned")
    category: str


class BookUpdateModel(BaseModel):
    title: Optional[str] = None
    author: Optional[str] = None
    isbn: Optional[str] = None
    quantity: Optional[int] = Field(default=None, ge=0)
    category: Optional[str] = None


class PaginatedBooks(BaseModel):
    data: List[BookModel]
    page: int
    limit: int
    total: int
    total_pages: int


class BorrowRequest(BaseModel):
    book_id: int = Field(ge=1)


class LoanModel(BaseModel):
    id: int
    book_id: int
    user_id: int
    borrow_date: datetime
    return_date: Optional[datetime] = None
    status: str
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    book: Optional[BookModel] = None
    user: Optional[UserModel] = None


class PaginatedLoans(BaseModel):
    data: List[LoanModel]
    page: int
    limit: int
    total: int
    total_pages: int


class MessageResponse(BaseModel):
    message: str


# --- Helpers ---
def _user_model(user: User) -> UserModel:
    return UserModel(**user.to_dict())


def _book_model(book: Book, available: Optional[int] = None) -> BookModel:
    return BookModel(**book.to_dict(), available=available)


def _loan_model(record: LoanRecord) -> LoanModel:
    return LoanModel(**record.to_dict())


# --- Security ---
api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)
bearer_scheme = HTTPBearer(auto_error=False)


def get_api_key(request: Request, api_key: Optional[str] = Security(api_key_header)) -> str:
    """Dependency guarding catalog writes."""
    expected = request.app.state.settings.api_key
    if api_key and hmac.compare_digest(api_key, expected):
        return api_key
    raise HTTPException(status_code=403, detail="Could not validate credentials")


def get_current_user_id(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Security(bearer_scheme),
) -> int:
    """Resolve ``Authorization: Bearer <token>`` to the caller's user id."""
    if credentials is None:
        raise HTTPException(
            status_code=401,
            detail="Authorization header required",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return request.app.state.auth.resolve_token(credentials.credentials)


def create_app(
    config: Optional[Settings] = None,
    database: Optional[Database] = None,
    rate_limiter: Optional[RateLimiter] = None,
    clock: Callable[[], datetime] = utcnow,
) -> FastAPI:
    """Build the API with its own database, services and rate limiter."""
    config = config or default_settings
    configure_logging(config)

    if database is None:
        database = Database(config.db_file, config.db_timeout)
    database.initialize()
    if rate_limiter is None and config.rate_limit_enabled:
        rate_limiter = RateLimiter.from_settings(config)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if rate_limiter is not None:
            rate_limiter.start_cleanup()
        logger.info(f"{config.app_name} started (environment={config.environment})")
        try:
            yield
        finally:
            if rate_limiter is not None:
                await rate_limiter.stop_cleanup()
            logger.info(f"{config.app_name} stopped")

    app = FastAPI(title=config.app_name, version=config.app_version or __version__, lifespan=lifespan)
    app.state.settings = config
    app.state.database = database
    app.state.engine = LendingEngine(database, config, clock=clock)
    app.state.catalog = Catalog(database, config)
    app.state.auth = AuthService(database, config, clock=clock)
    app.state.rate_limiter = rate_limiter

    # --- Rate limiting ---
    @app.middleware("http")
    async def rate_limit(request: Request, call_next):
        limiter = request.app.state.rate_limiter
        if limiter is not None:
            client = request.client.host if request.client else "unknown"
            if not limiter.allow(client):
                logger.warning(f"Rate limit exceeded: client={client} path={request.url.path}")
                return JSONResponse(
                    status_code=429,
                    content={"error": "rate_limit_exceeded", "detail": "Too many requests, please try again later"},
                    headers={"Retry-After": str(max(1, limiter.retry_after(client)))},
                )
        return await call_next(request)

    # --- CORS ---
    # added last so it wraps rate limiting and answers preflights first
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[o.strip() for o in config.cors_origins.split(",") if o.strip()],
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-API-Key"],
        max_age=86400,
    )

    @app.exception_handler(LendingError)
    async def lending_error_handler(request: Request, exc: LendingError):
        if exc.status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    # --- Health ---
    @app.get("/health")
    def health():
        return {"status": "healthy", "timestamp": utcnow().isoformat(), "version": app.version}

    # --- Auth ---
    @app.post(f"{API_PREFIX}/auth/register", response_model=AuthResponse, status_code=201)
    def register(payload: AuthRequest, request: Request):
        user, token = request.app.state.auth.register(payload.email, payload.password)
        return AuthResponse(token=token, user=_user_model(user))

    @app.post(f"{API_PREFIX}/auth/login", response_model=AuthResponse)
    def login(payload: AuthRequest, request: Request):
        user, token = request.app.state.auth.login(payload.email, payload.password)
        return AuthResponse(token=token, user=_user_model(user))

    @app.post(f"{API_PREFIX}/auth/logout", status_code=204)
    def logout(
        request: Request,
        credentials: Optional[HTTPAuthorizationCredentials] = Security(bearer_scheme),
        user_id: int = Depends(get_current_user_id),
    ):
        request.app.state.auth.logout(credentials.credentials)
        return Response(status_code=204)

    # --- Books ---
    @app.get(f"{API_PREFIX}/books", response_model=PaginatedBooks)
    def list_books(
        request: Request,
        page: int = Query(1, ge=1, description="Page number"),
        limit: int = Query(config.default_page_size, ge=1, description="Items per page"),
    ):
        result = request.app.state.catalog.list_books(page, limit)
        return PaginatedBooks(
            data=[_book_model(book, available) for book, available in result.items],
            page=result.page,
            limit=result.page_size,
            total=result.total,
            total_pages=result.total_pages,
        )

    @app.get(f"{API_PREFIX}/books/{{book_id}}", response_model=BookModel)
    def get_book(book_id: int, request: Request):
        book, available = request.app.state.catalog.get_book_with_availability(book_id)
        return _book_model(book, available)

    @app.post(
        f"{API_PREFIX}/books",
        response_model=BookModel,
        status_code=201,
        dependencies=[Depends(get_api_key)],
    )
    def create_book(payload: BookCreateModel, request: Request):
        book = request.app.state.catalog.create_book(
            payload.title, payload.author, payload.isbn, payload.quantity, payload.category
        )
        return _book_model(book, book.quantity)

    @app.put(f"{API_PREFIX}/books/{{book_id}}", response_model=BookModel, dependencies=[Depends(get_api_key)])
    def update_book(book_id: int, payload: BookUpdateModel, request: Request):
        catalog = request.app.state.catalog
        catalog.update_book(book_id, **payload.model_dump(exclude_none=True))
        book, available = catalog.get_book_with_availability(book_id)
        return _book_model(book, available)

    @app.delete(f"{API_PREFIX}/books/{{book_id}}", response_model=MessageResponse, dependencies=[Depends(get_api_key)])
    def delete_book(book_id: int, request: Request):
        request.app.state.catalog.delete_book(book_id)
        return MessageResponse(message="Book deleted successfully")

    # --- Lending ---
    @app.post(f"{API_PREFIX}/lending/borrow", response_model=LoanModel, status_code=201)
    def borrow_book(payload: BorrowRequest, request: Request, user_id: int = Depends(get_current_user_id)):
        record = request.app.state.engine.borrow_book(user_id, payload.book_id)
        return _loan_model(record)

    @app.put(f"{API_PREFIX}/lending/return/{{record_id}}", response_model=LoanModel)
    def return_book(record_id: int, request: Request, user_id: int = Depends(get_current_user_id)):
        record = request.app.state.engine.return_book(user_id, record_id)
        return _loan_model(record)

    @app.get(f"{API_PREFIX}/lending/history", response_model=PaginatedLoans)
    def borrowing_history(
        request: Request,
        page: int = Query(1, ge=1),
        limit: int = Query(config.default_page_size, ge=1),
        user_id: int = Depends(get_current_user_id),
    ):
        result = request.app.state.engine.get_user_borrowing_history(user_id, page, limit)
        return PaginatedLoans(
            data=[_loan_model(r) for r in result.items],
            page=result.page,
            limit=result.page_size,
            total=result.total,
            total_pages=result.total_pages,
        )

    @app.get(f"{API_PREFIX}/lending/active", response_model=List[LoanModel])
    def active_borrowings(request: Request, user_id: int = Depends(get_current_user_id)):
        return [_loan_model(r) for r in request.app.state.engine.get_active_borrowings(user_id)]

    return app
