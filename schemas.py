"""
Database Schemas for the Library API

Each Pydantic model represents a collection in MongoDB.
Collection name is the lowercase class name (snake_case for LogEntry).

Collections:
- User
- Book
- Loan
- LogEntry
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from database import utcnow


class Role(str, Enum):
    REGISTERED_USER = "RegisteredUser"
    LIBRARIAN = "Librarian"
    ADMINISTRATOR = "Administrator"


PRIVILEGED_ROLES = (Role.LIBRARIAN.value, Role.ADMINISTRATOR.value)


class LoanStatus(str, Enum):
    ACTIVE = "Active"
    RETURNED = "Returned"
    OVERDUE = "Overdue"
    LOST = "Lost"


# Active and Overdue loans hold one checked-out copy
OUTSTANDING_STATUSES = (LoanStatus.ACTIVE.value, LoanStatus.OVERDUE.value)


class LogLevel(str, Enum):
    TRACE = "TRACE"
    DEBUG = "DEBUG"
    INFORMATION = "INFORMATION"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class _Document(BaseModel):
    model_config = ConfigDict(use_enum_values=True)


class User(_Document):
    """
    Users collection schema
    Collection name: "user"
    """
    username: str = Field(..., description="Unique, case-sensitive login name")
    password_hash: str = Field(..., description="base64(salt + PBKDF2 hash)")
    email: str = Field(..., description="Unique, lowercased email address")
    role: Role = Field(Role.REGISTERED_USER, description="RegisteredUser | Librarian | Administrator")
    is_active: bool = Field(True, description="False once deactivated")
    created_at: datetime = Field(default_factory=utcnow)


class Book(_Document):
    """
    Books collection schema
    Collection name: "book"
    """
    title: str = Field(..., description="Book title")
    author: str = Field(..., description="Primary author")
    isbn: str = Field("", description="ISBN, unique among active books")
    publisher: str = Field("", description="Publisher")
    publication_year: Optional[int] = Field(None, description="Year of publication")
    category: str = Field("", description="Category/Genre")
    description: str = Field("", description="Short description")
    total_copies: int = Field(1, ge=1, description="Total copies owned")
    available_copies: int = Field(1, ge=0, description="Copies currently on the shelf")
    is_active: bool = Field(True, description="False once soft-deleted")
    created_by: str = Field("", description="Who added the book")
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class Loan(_Document):
    """
    Loans collection schema
    Collection name: "loan"
    """
    book_id: str = Field(..., description="Book ObjectId as string")
    user_id: str = Field(..., description="User ObjectId as string")
    username: str = Field(..., description="Borrower")
    book_title: str = Field("", description="Title at the time of the loan")
    book_author: str = Field("", description="Author at the time of the loan")
    loan_date: datetime = Field(default_factory=utcnow)
    due_date: datetime = Field(..., description="Due date/time (UTC)")
    return_date: Optional[datetime] = Field(None, description="Return date/time (UTC)")
    status: LoanStatus = Field(LoanStatus.ACTIVE, description="Active | Returned | Overdue | Lost")
    notes: str = Field("", description="Free text, appended to on updates")
    processed_by: str = Field("", description="Who approved or created the loan")
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class LogEntry(_Document):
    """
    Audit log collection schema
    Collection name: "log_entry"
    """
    timestamp: datetime = Field(default_factory=utcnow)
    level: str = Field(..., description="TRACE | DEBUG | INFORMATION | WARNING | ERROR | CRITICAL")
    message: str
    exception: Optional[str] = None
    username: Optional[str] = None
    controller: Optional[str] = None
    action: Optional[str] = None
