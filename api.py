import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Dict, List, Optional

from fastapi import FastAPI, HTTPException, Depends, File, Header, Query, Request, Security, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import APIKeyHeader
from pydantic import BaseModel, ConfigDict, Field

from audit import get_audit_logs
from circulation import Circulation
from config import settings
from database import get_db_connection
from feedback import FeedbackDesk
from library import Library
from members import Members
from user import Role, User
from utils.validators import MAX_COPIES_PER_REQUEST

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

library = Library()
members = Members()
circulation = Circulation()
feedback_desk = FeedbackDesk()


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Make sure the config row exists before the first issue/return
    circulation.get_config()
    logger.info(f"{settings.app_name} {settings.app_version} started")
    try:
        yield
    finally:
        library.close()
        logger.info("Shutting down")

app = FastAPI(title=settings.app_name, version=settings.app_version, lifespan=lifespan)

# --- Middleware ---
app.add_middleware(GZipMiddleware, minimum_size=1000)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

@app.middleware("http")
async def add_security_headers(request: Request, call_next):
    response = await call_next(request)
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    return response

@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")
    return JSONResponse(status_code=500, content={"detail": str(exc) or "Internal server error"})

# --- Security ---
api_key_header = APIKeyHeader(name="X-API-Key")

def get_api_key(api_key: str = Security(api_key_header)):
    """Dependency to validate the API key."""
    if api_key == settings.api_key:
        return api_key
    else:
        raise HTTPException(
            status_code=403,
            detail="Could not validate credentials",
        )

def get_current_user(x_user_id: Optional[int] = Header(None)) -> Optional[User]:
    """Resolve the acting user from the X-User-Id header, if one was sent."""
    if x_user_id is None:
        return None
    user = members.get_user(x_user_id)
    if not user:
        raise HTTPException(status_code=401, detail="Unknown user")
    if not user.is_active:
        raise HTTPException(status_code=403, detail="Account is blocked")
    return user

def require_roles(*roles: Role):
    allowed = {r.value for r in roles}

    def dependency(user: Optional[User] = Depends(get_current_user)) -> User:
        if user is None:
            raise HTTPException(status_code=401, detail="Not authenticated")
        if user.role not in allowed:
            raise HTTPException(status_code=403, detail=f"Role '{user.role}' is not authorized to access this route")
        return user

    return dependency

require_staff = require_roles(Role.ADMIN, Role.STAFF)
require_admin = require_roles(Role.ADMIN)
require_student = require_roles(Role.STUDENT)

def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None

# --- Models ---
class DepartmentModel(BaseModel):
    id: int
    code: str
    name: str
    created_at: str | None = None

class DepartmentCreateModel(BaseModel):
    code: str = Field(..., min_length=1, description="Short code, e.g. CSE")
    name: str = Field(..., min_length=1)

class UserModel(BaseModel):
    id: int
    name: str
    email: str
    role: str
    register_number: str | None = None
    department: str | None = None
    is_active: bool
    created_at: str | None = None

class UserCreateModel(BaseModel):
    name: str
    email: str
    role: Role = Role.STUDENT
    register_number: str | None = None
    department: str | None = None
    password: str | None = Field(default=None, min_length=6)

class UserStatusModel(BaseModel):
    is_active: bool

class BookModel(BaseModel):
    id: int
    title: str
    author: str
    isbn: str
    department: str
    total_copies: int
    available_copies: int
    created_at: str | None = None
    updated_at: str | None = None

class BookCreateModel(BaseModel):
    title: str
    author: str
    isbn: str
    department: str = Field(..., description="Department code, must already exist")
    quantity: int = Field(default=1, ge=0, le=MAX_COPIES_PER_REQUEST, description="Number of copies to generate")

class UpdateBookModel(BaseModel):
    title: str | None = None
    author: str | None = None
    department: str | None = None

class BulkDeleteModel(BaseModel):
    book_ids: List[int] = Field(default_factory=list)

class ImportResultModel(BaseModel):
    message: str
    added: int
    updated: int
    errors: List[str]

class StatsModel(BaseModel):
    total_books: int
    total_copies: int
    available_copies: int
    unique_authors: int
    copies_by_status: Dict[str, int]

class CopyModel(BaseModel):
    id: int
    book_id: int
    copy_number: str
    status: str
    created_at: str | None = None

class CopyAddModel(BaseModel):
    book_id: int
    count: int = Field(..., ge=1, le=MAX_COPIES_PER_REQUEST)

class CopyStatusModel(BaseModel):
    status: str = Field(..., description="Available, Lost or Damaged")

class TransactionModel(BaseModel):
    id: int
    student_id: int
    book_id: int
    copy_number: str
    issue_date: str
    due_date: str
    return_date: str | None = None
    status: str
    fine: float
    is_fine_paid: bool
    fine_reason: str | None = None
    created_at: str | None = None
    updated_at: str | None = None
    # Joined details, present depending on the listing
    student_name: str | None = None
    register_number: str | None = None
    department: str | None = None
    student_email: str | None = None
    book_title: str | None = None
    book_author: str | None = None
    days_overdue: int | None = None
    accrued_fine: float | None = None

class IssueRequestModel(BaseModel):
    student_id: int
    isbn: str | None = Field(default=None, description="Issue the first available copy of this ISBN")
    copy_number: str | None = Field(default=None, description="Issue this exact copy, e.g. 9780134686097-2")

class IssueResponseModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    message: str
    copy_number: str = Field(..., alias="copy")
    transaction: TransactionModel
    due_date: str

class ReturnRequestModel(BaseModel):
    copy_number: str

class ReturnResponseModel(BaseModel):
    message: str
    fine: float
    student: str | None = None

class DeptActivityModel(BaseModel):
    labels: List[str]
    data: List[int]

class DashboardStatsModel(BaseModel):
    total_books: int
    total_students: int
    active_issues: int
    total_fine: float
    recent_activity: List[TransactionModel]
    dept_activity: DeptActivityModel

class FineEditModel(BaseModel):
    amount: float = Field(..., ge=0)
    reason: str | None = None

class SystemConfigModel(BaseModel):
    max_books_per_student: int
    issue_days_limit: int
    fine_per_day: float
    updated_at: str | None = None

class SystemConfigUpdateModel(BaseModel):
    max_books_per_student: int | None = Field(default=None, ge=1)
    issue_days_limit: int | None = Field(default=None, ge=1)
    fine_per_day: float | None = Field(default=None, ge=0)

class AuditLogModel(BaseModel):
    id: int
    actor_id: int | None = None
    actor_name: str
    action: str
    details: str | None = None
    ip: str
    created_at: str

class FeedbackModel(BaseModel):
    id: int
    student_id: int
    subject: str
    message: str
    status: str
    reply: str | None = None
    replied_by: int | None = None
    replied_at: str | None = None
    created_at: str | None = None
    student_name: str | None = None
    register_number: str | None = None

class FeedbackCreateModel(BaseModel):
    subject: str = Field(..., min_length=1, max_length=200)
    message: str = Field(..., min_length=1, max_length=5000)

class FeedbackReplyModel(BaseModel):
    reply: str = Field(..., min_length=1, max_length=5000)

# --- General ---
@app.get("/")
def read_root():
    return {"name": settings.app_name, "version": settings.app_version, "docs": "/docs"}

@app.get("/health")
def health():
    """Lightweight health endpoint with a quick database round-trip."""
    db_ok = True
    try:
        conn = get_db_connection()
        conn.execute("SELECT 1")
        conn.close()
    except Exception as e:
        logger.error(f"Health check database failure: {e}")
        db_ok = False
    return {
        "status": "healthy" if db_ok else "degraded",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "db": db_ok,
    }

@app.get("/stats", response_model=StatsModel)
def get_library_stats():
    """Catalog statistics."""
    return StatsModel(**library.get_statistics())

# --- Departments ---
@app.get("/departments", response_model=List[DepartmentModel])
def list_departments():
    return [DepartmentModel(**d.to_dict()) for d in library.list_departments()]

@app.post("/departments", response_model=DepartmentModel, status_code=201, dependencies=[Depends(get_api_key)])
def create_department(payload: DepartmentCreateModel, actor: User = Depends(require_admin)):
    try:
        department = library.add_department(payload.code, payload.name)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return DepartmentModel(**department.to_dict())

# --- Users ---
@app.post("/users", response_model=UserModel, status_code=201, dependencies=[Depends(get_api_key)])
def create_user(payload: UserCreateModel, actor: User = Depends(require_admin)):
    """Register an admin, staff member or student."""
    try:
        user = members.create_user(
            name=payload.name,
            email=payload.email,
            role=payload.role.value,
            register_number=payload.register_number,
            department=payload.department,
            password=payload.password,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return UserModel(**user.to_dict())

@app.get("/users", response_model=List[UserModel], dependencies=[Depends(get_api_key)])
def list_users(role: Optional[Role] = Query(None), actor: User = Depends(require_staff)):
    return [UserModel(**u.to_dict()) for u in members.list_users(role.value if role else None)]

@app.get("/users/{user_id}", response_model=UserModel, dependencies=[Depends(get_api_key)])
def get_user(user_id: int, actor: User = Depends(require_staff)):
    user = members.get_user(user_id)
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return UserModel(**user.to_dict())

@app.put("/users/{user_id}/status", response_model=UserModel, dependencies=[Depends(get_api_key)])
def set_user_status(user_id: int, payload: UserStatusModel, request: Request, actor: User = Depends(require_admin)):
    """Block or unblock an account."""
    user = members.set_active(user_id, payload.is_active, actor_id=actor.id, ip=_client_ip(request))
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return UserModel(**user.to_dict())

# --- Books ---
@app.get("/books", response_model=List[BookModel])
def get_books(
    q: Optional[str] = Query(None, description="Search title, author or ISBN"),
    limit: int = Query(100, ge=1, le=500, description="Maximum number of results"),
    offset: int = Query(0, ge=0, description="Number of results to skip"),
):
    """List books, newest first."""
    books = library.list_books(q)
    return [BookModel(**b.to_dict()) for b in books[offset:offset + limit]]

@app.get("/books/{book_id}", response_model=BookModel)
def get_book(book_id: int):
    book = library.find_book(book_id)
    if not book:
        raise HTTPException(status_code=404, detail="Book not found")
    return BookModel(**book.to_dict())

@app.post("/books", response_model=BookModel, status_code=201, dependencies=[Depends(get_api_key)])
def create_book(payload: BookCreateModel, request: Request, actor: User = Depends(require_staff)):
    """Add a title and generate its copies."""
    try:
        book = library.create_book(
            title=payload.title,
            author=payload.author,
            isbn=payload.isbn,
            department=payload.department,
            quantity=payload.quantity,
            actor_id=actor.id,
            ip=_client_ip(request),
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return BookModel(**book.to_dict())

@app.put("/books/{book_id}", response_model=BookModel, dependencies=[Depends(get_api_key)])
def update_book(book_id: int, update: UpdateBookModel, request: Request, actor: User = Depends(require_staff)):
    try:
        book = library.update_book(
            book_id,
            title=update.title,
            author=update.author,
            department=update.department,
            actor_id=actor.id,
            ip=_client_ip(request),
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    if not book:
        raise HTTPException(status_code=404, detail="Book not found")
    return BookModel(**book.to_dict())

@app.delete("/books/{book_id}", dependencies=[Depends(get_api_key)])
def delete_book(book_id: int, request: Request, actor: User = Depends(require_staff)):
    """Delete a book and all of its copies."""
    try:
        removed = library.remove_book(book_id, actor_id=actor.id, ip=_client_ip(request))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    if not removed:
        raise HTTPException(status_code=404, detail="Book not found")
    return {"message": "Book and all its copies deleted"}

@app.post("/books/bulk-delete", dependencies=[Depends(get_api_key)])
def bulk_delete_books(payload: BulkDeleteModel, request: Request, actor: User = Depends(require_staff)):
    try:
        removed = library.bulk_remove_books(payload.book_ids, actor_id=actor.id, ip=_client_ip(request))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"message": f"{removed} books and their copies deleted.", "deleted": removed}

@app.post("/books/upload", response_model=ImportResultModel, dependencies=[Depends(get_api_key)])
async def upload_books_csv(request: Request, file: UploadFile = File(...), actor: User = Depends(require_staff)):
    """Bulk import from a CSV with Title, Author, ISBN, Department and Quantity columns."""
    content = await file.read()
    if not content:
        raise HTTPException(status_code=400, detail="No file uploaded")
    if len(content) > settings.max_upload_size:
        raise HTTPException(status_code=413, detail=f"File exceeds {settings.max_upload_size} bytes")
    try:
        text = content.decode("utf-8-sig")
    except UnicodeDecodeError:
        raise HTTPException(status_code=400, detail="CSV must be UTF-8 encoded")
    result = library.import_books_csv(text, actor_id=actor.id, ip=_client_ip(request))
    return ImportResultModel(**result)

# --- Copies ---
@app.get("/books/{book_id}/copies", response_model=List[CopyModel], dependencies=[Depends(get_api_key)])
def get_book_copies(book_id: int, actor: User = Depends(require_staff)):
    try:
        copies = library.list_copies(book_id)
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return [CopyModel(**c.to_dict()) for c in copies]

@app.post("/copies", dependencies=[Depends(get_api_key)])
def add_copies(payload: CopyAddModel, request: Request, actor: User = Depends(require_staff)):
    try:
        copies = library.add_copies(payload.book_id, payload.count, actor_id=actor.id, ip=_client_ip(request))
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {
        "message": f"{payload.count} Copies Added",
        "copies": [CopyModel(**c.to_dict()) for c in copies],
    }

@app.delete("/copies/{copy_id}", dependencies=[Depends(get_api_key)])
def delete_copy(copy_id: int, request: Request, actor: User = Depends(require_staff)):
    try:
        removed = library.remove_copy(copy_id, actor_id=actor.id, ip=_client_ip(request))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    if not removed:
        raise HTTPException(status_code=404, detail="Copy not found")
    return {"message": "Copy deleted"}

@app.put("/copies/{copy_id}/status", response_model=CopyModel, dependencies=[Depends(get_api_key)])
def update_copy_status(copy_id: int, payload: CopyStatusModel, request: Request,
                       actor: User = Depends(require_staff)):
    try:
        copy = library.update_copy_status(copy_id, payload.status, actor_id=actor.id, ip=_client_ip(request))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    if not copy:
        raise HTTPException(status_code=404, detail="Copy not found")
    return CopyModel(**copy.to_dict())

# --- Circulation ---
@app.post("/circulation/issue", response_model=IssueResponseModel, status_code=201,
          dependencies=[Depends(get_api_key)])
def issue_book(payload: IssueRequestModel, request: Request, actor: User = Depends(require_staff)):
    """Issue a copy (by copy number, or the first available one for an ISBN)."""
    try:
        result = circulation.issue_book(
            payload.student_id,
            isbn=payload.isbn,
            copy_number=payload.copy_number,
            actor_id=actor.id,
            ip=_client_ip(request),
        )
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return IssueResponseModel(
        message=result["message"],
        copy_number=result["copy"],
        transaction=TransactionModel(**result["transaction"].to_dict()),
        due_date=result["due_date"],
    )

@app.post("/circulation/return", response_model=ReturnResponseModel, dependencies=[Depends(get_api_key)])
def return_book(payload: ReturnRequestModel, request: Request, actor: User = Depends(require_staff)):
    """Return a copy; an overdue return levies the per-day fine."""
    try:
        result = circulation.return_book(payload.copy_number, actor_id=actor.id, ip=_client_ip(request))
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return ReturnResponseModel(**result)

@app.get("/circulation/history", response_model=List[TransactionModel], dependencies=[Depends(get_api_key)])
def get_history(actor: User = Depends(require_staff)):
    return [TransactionModel(**t) for t in circulation.history()]

@app.get("/circulation/dashboard-stats", response_model=DashboardStatsModel, dependencies=[Depends(get_api_key)])
def get_dashboard_stats(actor: User = Depends(require_staff)):
    return DashboardStatsModel(**circulation.dashboard_stats())

@app.get("/circulation/fines", response_model=List[TransactionModel], dependencies=[Depends(get_api_key)])
def get_unpaid_fines(actor: User = Depends(require_staff)):
    return [TransactionModel(**t) for t in circulation.unpaid_fines()]

@app.get("/circulation/overdue", response_model=List[TransactionModel], dependencies=[Depends(get_api_key)])
def get_overdue(actor: User = Depends(require_staff)):
    return [TransactionModel(**t) for t in circulation.overdue_issues()]

@app.put("/circulation/fines/{transaction_id}/pay", dependencies=[Depends(get_api_key)])
def collect_fine(transaction_id: int, request: Request, actor: User = Depends(require_staff)):
    try:
        transaction = circulation.collect_fine(transaction_id, actor_id=actor.id, ip=_client_ip(request))
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return {"message": "Payment Collected", "transaction": TransactionModel(**transaction.to_dict())}

@app.put("/circulation/fines/{transaction_id}/edit", dependencies=[Depends(get_api_key)])
def edit_fine(transaction_id: int, payload: FineEditModel, request: Request, actor: User = Depends(require_staff)):
    try:
        transaction = circulation.edit_fine(
            transaction_id, payload.amount, payload.reason, actor_id=actor.id, ip=_client_ip(request)
        )
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"message": "Fine Updated", "transaction": TransactionModel(**transaction.to_dict())}

@app.get("/circulation/student-history", response_model=List[TransactionModel])
def get_student_issues(student: User = Depends(require_student)):
    return [TransactionModel(**t) for t in circulation.student_issues(student.id)]

# --- System configuration ---
@app.get("/config", response_model=SystemConfigModel, dependencies=[Depends(get_api_key)])
def get_config(actor: User = Depends(require_staff)):
    return SystemConfigModel(**circulation.get_config().to_dict())

@app.put("/config", response_model=SystemConfigModel, dependencies=[Depends(get_api_key)])
def update_config(payload: SystemConfigUpdateModel, request: Request, actor: User = Depends(require_admin)):
    try:
        config = circulation.update_config(
            max_books_per_student=payload.max_books_per_student,
            issue_days_limit=payload.issue_days_limit,
            fine_per_day=payload.fine_per_day,
            actor_id=actor.id,
            ip=_client_ip(request),
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return SystemConfigModel(**config.to_dict())

# --- Audit ---
@app.get("/audit", response_model=List[AuditLogModel], dependencies=[Depends(get_api_key)])
def get_audit(limit: int = Query(100, ge=1, le=500), actor: User = Depends(require_admin)):
    """Most recent audit events, newest first."""
    return [AuditLogModel(**log.to_dict()) for log in get_audit_logs(limit)]

# --- Feedback ---
@app.post("/feedback", response_model=FeedbackModel, status_code=201)
def submit_feedback(payload: FeedbackCreateModel, student: User = Depends(require_student)):
    try:
        item = feedback_desk.submit(student.id, payload.subject, payload.message)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return FeedbackModel(**item.to_dict())

@app.get("/feedback", response_model=List[FeedbackModel], dependencies=[Depends(get_api_key)])
def get_all_feedback(actor: User = Depends(require_staff)):
    return [FeedbackModel(**f) for f in feedback_desk.list_all()]

@app.get("/feedback/my", response_model=List[FeedbackModel])
def get_my_feedback(student: User = Depends(require_student)):
    return [FeedbackModel(**f.to_dict()) for f in feedback_desk.list_for_student(student.id)]

@app.put("/feedback/{feedback_id}/reply", response_model=FeedbackModel, dependencies=[Depends(get_api_key)])
def reply_feedback(feedback_id: int, payload: FeedbackReplyModel, request: Request,
                   actor: User = Depends(require_staff)):
    try:
        item = feedback_desk.reply(feedback_id, payload.reply, actor_id=actor.id, ip=_client_ip(request))
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return FeedbackModel(**item.to_dict())
