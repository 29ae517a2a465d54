import logging
import time
from datetime import datetime
from http import HTTPStatus
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, FastAPI, Query, Request, Response, Security
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel
from pymongo.database import Database
from pymongo.errors import PyMongoError

from audit import AuditContext, AuditLog
from auth import AuthService
from catalog import BookCatalog, BookData
from config import settings
from database import get_db, utcnow
from errors import ForbiddenError, LibraryError, NotFoundError, UnauthorizedError, ValidationError
from loans import LoanLedger, LoanRequest, LoanUpdate, ReturnDetails
from schemas import PRIVILEGED_ROLES, LoanStatus, Role
from security import Identity, TokenService
from users import UserDirectory

logging.basicConfig(level=getattr(logging, settings.log_level.upper(), logging.INFO))
logger = logging.getLogger(__name__)


# Request Models
class RegisterRequest(BaseModel):
    username: Optional[str] = None
    password: Optional[str] = None
    email: Optional[str] = None
    role: Optional[str] = None


class LoginRequest(BaseModel):
    username: Optional[str] = None
    password: Optional[str] = None


class UpdateLoanStatusRequest(BaseModel):
    status: LoanStatus


class UpdateProfileRequest(BaseModel):
    email: Optional[str] = None
    password: Optional[str] = None


class UpdateRoleRequest(BaseModel):
    role: str


# Dependencies
bearer = HTTPBearer(auto_error=False)


def get_token_service() -> TokenService:
    return TokenService(
        settings.jwt_key,
        issuer=settings.jwt_issuer,
        audience=settings.jwt_audience,
        expiration_hours=settings.jwt_expiration_hours,
        algorithm=settings.jwt_algorithm,
    )


def optional_identity(
    credentials: Optional[HTTPAuthorizationCredentials] = Security(bearer),
    tokens: TokenService = Depends(get_token_service),
) -> Optional[Identity]:
    if credentials is None:
        return None
    return tokens.verify(credentials.credentials)


def current_identity(identity: Optional[Identity] = Depends(optional_identity)) -> Identity:
    if identity is None:
        raise UnauthorizedError("Authentication required")
    return identity


def require_roles(*roles: str):
    def dependency(identity: Identity = Depends(current_identity)) -> Identity:
        if identity.role not in roles:
            raise ForbiddenError("Insufficient permissions")
        return identity

    return dependency


privileged = require_roles(*PRIVILEGED_ROLES)
admin_only = require_roles(Role.ADMINISTRATOR.value)


def _route_context(request: Request, username: Optional[str]) -> AuditContext:
    route = request.scope.get("route")
    tags = getattr(route, "tags", None) or []
    return AuditContext(
        username=username,
        controller=str(tags[0]) if tags else None,
        action=getattr(route, "name", None),
    )


def audit_context(request: Request, identity: Optional[Identity] = Depends(optional_identity)) -> AuditContext:
    return _route_context(request, identity.username if identity else None)


def get_audit_log(db: Database = Depends(get_db)) -> AuditLog:
    return AuditLog(db)


def get_users(
    db: Database = Depends(get_db),
    audit: AuditLog = Depends(get_audit_log),
    context: AuditContext = Depends(audit_context),
) -> UserDirectory:
    return UserDirectory(db, audit, context)


def get_catalog(
    db: Database = Depends(get_db),
    audit: AuditLog = Depends(get_audit_log),
    context: AuditContext = Depends(audit_context),
) -> BookCatalog:
    return BookCatalog(db, audit, context)


def get_ledger(
    db: Database = Depends(get_db),
    catalog: BookCatalog = Depends(get_catalog),
    users: UserDirectory = Depends(get_users),
    audit: AuditLog = Depends(get_audit_log),
    context: AuditContext = Depends(audit_context),
) -> LoanLedger:
    return LoanLedger(db, catalog, users, audit, context)


def get_auth_service(
    users: UserDirectory = Depends(get_users),
    tokens: TokenService = Depends(get_token_service),
    audit: AuditLog = Depends(get_audit_log),
    context: AuditContext = Depends(audit_context),
) -> AuthService:
    return AuthService(users, tokens, audit, context)


def actor(identity: Identity) -> str:
    return f"{identity.username} ({identity.role})"


def no_content() -> Response:
    return Response(status_code=HTTPStatus.NO_CONTENT)


app = FastAPI(title="Library Management API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE"],
    allow_headers=["Authorization", "Content-Type"],
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    started = time.perf_counter()
    response = await call_next(request)
    logger.info(
        "%s %s -> %s in %.0f ms",
        request.method,
        request.url.path,
        response.status_code,
        (time.perf_counter() - started) * 1000,
    )
    return response


@app.exception_handler(LibraryError)
async def library_error_handler(request: Request, exc: LibraryError):
    return JSONResponse(status_code=int(exc.status_code), content={"message": exc.message})


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = [{"loc": list(err.get("loc", ())), "msg": err.get("msg", "")} for err in exc.errors()]
    return JSONResponse(status_code=HTTPStatus.BAD_REQUEST, content={"message": "Invalid request data", "errors": errors})


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    db = app.dependency_overrides.get(get_db, get_db)()
    try:
        AuditLog(db).record(
            _route_context(request, None),
            "ERROR",
            f"Unhandled error on {request.method} {request.url.path}",
            exc,
        )
    except PyMongoError:
        logger.exception("Unhandled error on %s %s (audit log unavailable)", request.method, request.url.path)
    return JSONResponse(status_code=HTTPStatus.INTERNAL_SERVER_ERROR, content={"message": "Internal server error"})


@app.get("/health")
def health():
    return {"status": "Healthy", "timestamp": utcnow(), "environment": settings.environment}


# Auth Endpoints
auth_router = APIRouter(prefix="/api/auth", tags=["Auth"])


@auth_router.post("/register")
def register(payload: RegisterRequest, service: AuthService = Depends(get_auth_service)):
    user = service.register(payload.username, payload.password, payload.email, payload.role)
    return {"message": "User created successfully", "user": user}


@auth_router.post("/login")
def login(payload: LoginRequest, service: AuthService = Depends(get_auth_service)):
    return service.login(payload.username, payload.password)


@auth_router.get("/verify")
def verify(
    identity: Identity = Depends(current_identity),
    audit: AuditLog = Depends(get_audit_log),
    context: AuditContext = Depends(audit_context),
):
    audit.record(context, "INFORMATION", f"Token verification for user: {identity.username}")
    return {
        "username": identity.username,
        "role": identity.role,
        "email": identity.email,
        "is_authenticated": True,
    }


@auth_router.post("/logout")
def logout(identity: Identity = Depends(current_identity), service: AuthService = Depends(get_auth_service)):
    return service.logout(identity)


# Books Endpoints
books_router = APIRouter(prefix="/api/books", tags=["Books"])


@books_router.get("")
def list_books(identity: Identity = Depends(current_identity), catalog: BookCatalog = Depends(get_catalog)):
    return catalog.list()


@books_router.get("/search")
def search_books(
    search_term: Optional[str] = Query(None, alias="searchTerm"),
    identity: Identity = Depends(current_identity),
    catalog: BookCatalog = Depends(get_catalog),
):
    return catalog.search(search_term)


@books_router.get("/{book_id}")
def get_book(book_id: str, identity: Identity = Depends(current_identity), catalog: BookCatalog = Depends(get_catalog)):
    book = catalog.get(book_id)
    if book is None:
        raise NotFoundError("Book not found")
    return book


@books_router.get("/{book_id}/availability")
def book_availability(
    book_id: str, identity: Identity = Depends(current_identity), catalog: BookCatalog = Depends(get_catalog)
):
    availability = catalog.availability(book_id)
    if availability is None:
        raise NotFoundError("Book not found")
    return availability


@books_router.post("", status_code=201)
def create_book(payload: BookData, identity: Identity = Depends(privileged), catalog: BookCatalog = Depends(get_catalog)):
    return catalog.create(payload, identity.username)


@books_router.put("/{book_id}", status_code=204)
def update_book(
    book_id: str,
    payload: BookData,
    identity: Identity = Depends(privileged),
    catalog: BookCatalog = Depends(get_catalog),
):
    if not catalog.update(book_id, payload, identity.username):
        raise NotFoundError("Book not found")
    return no_content()


@books_router.delete("/{book_id}", status_code=204)
def delete_book(book_id: str, identity: Identity = Depends(admin_only), catalog: BookCatalog = Depends(get_catalog)):
    if not catalog.delete(book_id, identity.username):
        raise NotFoundError("Book not found")
    return no_content()


# Loans Endpoints
loans_router = APIRouter(prefix="/api/loans", tags=["Loans"])


@loans_router.get("")
def list_loans(identity: Identity = Depends(privileged), ledger: LoanLedger = Depends(get_ledger)):
    return ledger.get_all_loans()


@loans_router.get("/my-loans")
def my_loans(identity: Identity = Depends(current_identity), ledger: LoanLedger = Depends(get_ledger)):
    return ledger.get_loans_by_user(identity.username)


@loans_router.get("/my-active-loans")
def my_active_loans(identity: Identity = Depends(current_identity), ledger: LoanLedger = Depends(get_ledger)):
    return ledger.get_active_loans_by_user(identity.username)


@loans_router.get("/overdue")
def overdue_loans(identity: Identity = Depends(privileged), ledger: LoanLedger = Depends(get_ledger)):
    return ledger.get_overdue_loans()


@loans_router.get("/statistics")
def loan_statistics(identity: Identity = Depends(privileged), ledger: LoanLedger = Depends(get_ledger)):
    return ledger.statistics()


@loans_router.get("/user/{username}")
def user_loans(username: str, identity: Identity = Depends(admin_only), ledger: LoanLedger = Depends(get_ledger)):
    return ledger.get_loans_by_user(username)


@loans_router.post("/reconcile")
def reconcile_inventory(
    book_id: Optional[str] = Query(None, alias="bookId"),
    identity: Identity = Depends(admin_only),
    ledger: LoanLedger = Depends(get_ledger),
):
    corrections = ledger.reconcile_inventory(book_id)
    return {"corrected": len(corrections), "books": corrections}


@loans_router.get("/{loan_id}")
def get_loan(loan_id: str, identity: Identity = Depends(current_identity), ledger: LoanLedger = Depends(get_ledger)):
    return ledger.get_by_id(loan_id, identity)


@loans_router.post("", status_code=201)
def create_loan(payload: LoanRequest, identity: Identity = Depends(privileged), ledger: LoanLedger = Depends(get_ledger)):
    if not payload.book_id:
        raise ValidationError("Book id is required")
    borrower = payload.username or identity.username
    loan, reason = ledger.create_loan(payload, borrower, actor(identity))
    if loan is None:
        raise ValidationError(f"Could not create the loan: {reason}")
    return loan


@loans_router.post("/request")
def request_loan(
    payload: LoanRequest, identity: Identity = Depends(current_identity), ledger: LoanLedger = Depends(get_ledger)
):
    if not payload.book_id:
        raise ValidationError("Book id is required")
    loan, reason = ledger.create_loan(payload, identity.username, f"Auto-approved ({identity.role})")
    if loan is None:
        raise ValidationError(f"Could not process the request: {reason}")
    return loan


@loans_router.put("/{loan_id}", status_code=204)
def update_loan(
    loan_id: str, payload: LoanUpdate, identity: Identity = Depends(admin_only), ledger: LoanLedger = Depends(get_ledger)
):
    if not ledger.update_loan(loan_id, payload, actor(identity)):
        raise NotFoundError("Loan not found")
    return no_content()


@loans_router.put("/{loan_id}/return", status_code=204)
def return_loan(
    loan_id: str,
    payload: ReturnDetails,
    identity: Identity = Depends(privileged),
    ledger: LoanLedger = Depends(get_ledger),
):
    if not ledger.return_book(loan_id, payload, actor(identity)):
        raise NotFoundError("Loan not found or already returned")
    return no_content()


@loans_router.put("/{loan_id}/status", status_code=204)
def update_loan_status(
    loan_id: str,
    payload: UpdateLoanStatusRequest,
    identity: Identity = Depends(admin_only),
    ledger: LoanLedger = Depends(get_ledger),
):
    if not ledger.update_loan_status(loan_id, payload.status):
        raise NotFoundError("Loan not found")
    return no_content()


@loans_router.delete("/{loan_id}", status_code=204)
def delete_loan(loan_id: str, identity: Identity = Depends(admin_only), ledger: LoanLedger = Depends(get_ledger)):
    if not ledger.delete_loan(loan_id):
        raise NotFoundError("Loan not found")
    return no_content()


# Users Endpoints
users_router = APIRouter(prefix="/api/users", tags=["Users"])


@users_router.get("")
def list_users(
    role: Optional[str] = None,
    identity: Identity = Depends(privileged),
    users: UserDirectory = Depends(get_users),
) -> List[Dict[str, Any]]:
    found = users.list_by_role(role) if role else users.list_active()
    return [{"id": u["id"], "username": u["username"]} for u in found]


@users_router.get("/lookup/{username}")
def lookup_user(username: str, identity: Identity = Depends(admin_only), users: UserDirectory = Depends(get_users)):
    user = users.find_by_username(username)
    if user is None:
        raise NotFoundError("User not found")
    return {
        "id": user["id"],
        "username": user["username"],
        "email": user["email"],
        "role": user["role"],
        "is_active": user["is_active"],
        "created_at": user["created_at"],
    }


@users_router.put("/me", status_code=204)
def update_profile(
    payload: UpdateProfileRequest,
    identity: Identity = Depends(current_identity),
    users: UserDirectory = Depends(get_users),
):
    if not users.update(identity.user_id, email=payload.email, new_password=payload.password):
        raise NotFoundError("User not found")
    return no_content()


@users_router.put("/{user_id}/role", status_code=204)
def update_role(
    user_id: str,
    payload: UpdateRoleRequest,
    identity: Identity = Depends(admin_only),
    users: UserDirectory = Depends(get_users),
):
    if not users.update_role(user_id, payload.role):
        raise NotFoundError("User not found")
    return no_content()


@users_router.delete("/{user_id}", status_code=204)
def deactivate_user(user_id: str, identity: Identity = Depends(admin_only), users: UserDirectory = Depends(get_users)):
    if not users.deactivate(user_id):
        raise NotFoundError("User not found")
    return no_content()


# Logs Endpoints
logs_router = APIRouter(prefix="/api/log", tags=["Logs"])


@logs_router.get("/recent")
def recent_logs(
    limit: int = 100,
    identity: Identity = Depends(admin_only),
    audit: AuditLog = Depends(get_audit_log),
    context: AuditContext = Depends(audit_context),
):
    audit.record(context, "INFORMATION", f"User {identity.username} reading recent logs")
    return audit.recent(limit)


@logs_router.get("/count/{level}")
def log_count(
    level: str,
    identity: Identity = Depends(admin_only),
    audit: AuditLog = Depends(get_audit_log),
    context: AuditContext = Depends(audit_context),
):
    audit.record(context, "INFORMATION", f"User {identity.username} counting logs at level {level}")
    return {"level": level, "count": audit.count_by_level(level), "timestamp": utcnow()}


@logs_router.get("/date-range")
def logs_by_date_range(
    start_date: datetime = Query(..., alias="startDate"),
    end_date: datetime = Query(..., alias="endDate"),
    limit: int = 500,
    identity: Identity = Depends(admin_only),
    audit: AuditLog = Depends(get_audit_log),
    context: AuditContext = Depends(audit_context),
):
    audit.record(context, "INFORMATION", f"User {identity.username} reading logs from {start_date} to {end_date}")
    return audit.by_date_range(start_date, end_date, limit)


@logs_router.get("/user/{username}")
def logs_by_user(
    username: str,
    limit: int = 200,
    identity: Identity = Depends(admin_only),
    audit: AuditLog = Depends(get_audit_log),
    context: AuditContext = Depends(audit_context),
):
    audit.record(context, "INFORMATION", f"User {identity.username} reading logs of {username}")
    return audit.by_user(username, limit)


@logs_router.get("/statistics")
def log_statistics(
    identity: Identity = Depends(admin_only),
    audit: AuditLog = Depends(get_audit_log),
    context: AuditContext = Depends(audit_context),
):
    audit.record(context, "INFORMATION", f"User {identity.username} reading log statistics")
    return audit.statistics()


@logs_router.get("/search")
def search_logs(
    search_term: Optional[str] = Query(None, alias="searchTerm"),
    limit: int = 300,
    identity: Identity = Depends(admin_only),
    audit: AuditLog = Depends(get_audit_log),
    context: AuditContext = Depends(audit_context),
):
    audit.record(context, "INFORMATION", f"User {identity.username} searching logs for: {search_term}")
    return audit.search(search_term, limit)


app.include_router(auth_router)
app.include_router(books_router)
app.include_router(loans_router)
app.include_router(users_router)
app.include_router(logs_router)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=settings.port)
