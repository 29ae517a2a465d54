"""Loan ledger.

A loan moves through ``Active -> Returned | Lost | Overdue`` and
``Overdue -> Returned | Lost``.  Active and Overdue loans are outstanding:
each one accounts for a copy missing from the book's ``available_copies``.

Creating, returning and deleting a loan are two separate writes (the loan
document, then the book counter) with no transaction around them.  A failure
between the two leaves the counter off by one; :meth:`LoanLedger.reconcile_inventory`
recomputes counters from the outstanding loans.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, Field
from pymongo import ASCENDING, DESCENDING
from pymongo.database import Database
from pymongo.errors import PyMongoError

from audit import AuditContext, AuditLog
from catalog import BookCatalog
from database import as_object_id, create_document, get_documents, naive_utc, to_str_id, utcnow
from errors import ForbiddenError, NotFoundError, ValidationError
from schemas import OUTSTANDING_STATUSES, Loan, LoanStatus
from security import Identity
from users import UserDirectory

COLLECTION = "loan"

MAX_LOAN_DAYS = 30
MAX_ACTIVE_LOANS_PER_USER = 5
DEFAULT_LOAN_DAYS = 14

LEGAL_TRANSITIONS = {
    LoanStatus.ACTIVE.value: {LoanStatus.RETURNED.value, LoanStatus.LOST.value, LoanStatus.OVERDUE.value},
    LoanStatus.OVERDUE.value: {LoanStatus.RETURNED.value, LoanStatus.LOST.value},
    LoanStatus.RETURNED.value: set(),
    LoanStatus.LOST.value: set(),
}

RETURN_STATUSES = (LoanStatus.RETURNED, LoanStatus.LOST)


class LoanRequest(BaseModel):
    book_id: str
    loan_days: int = DEFAULT_LOAN_DAYS
    notes: str = ""
    username: Optional[str] = Field(None, description="Borrower when a librarian lends on someone's behalf")


class ReturnDetails(BaseModel):
    status: LoanStatus = LoanStatus.RETURNED
    notes: str = ""


class LoanUpdate(BaseModel):
    due_date: Optional[datetime] = None
    notes: Optional[str] = None


def present(doc: Optional[Dict[str, Any]], now: Optional[datetime] = None) -> Optional[Dict[str, Any]]:
    """Response form of a stored loan, with the derived ``is_overdue`` flag."""
    if doc is None:
        return None
    doc = to_str_id(doc) if "_id" in doc else doc
    now = now or utcnow()
    doc["is_overdue"] = doc["status"] == LoanStatus.ACTIVE.value and now > doc["due_date"]
    return doc


class LoanLedger:
    def __init__(
        self,
        db: Database,
        catalog: BookCatalog,
        users: UserDirectory,
        audit: AuditLog,
        context: AuditContext,
    ):
        self.collection = db[COLLECTION]
        self.db = db
        self.catalog = catalog
        self.users = users
        self.audit = audit
        self.context = context

    def _log(self, level: str, message: str, exception: Optional[BaseException] = None) -> None:
        self.audit.record(self.context, level, message, exception)

    def _find(self, loan_id: str) -> Optional[Dict[str, Any]]:
        oid = as_object_id(loan_id)
        if oid is None:
            return None
        return self.collection.find_one({"_id": oid})

    def _list(self, query: Dict[str, Any], sort: List[tuple]) -> List[Dict[str, Any]]:
        now = utcnow()
        return [present(doc, now) for doc in get_documents(self.db, COLLECTION, query, sort=sort)]

    # Reads

    def get_all_loans(self) -> List[Dict[str, Any]]:
        self._log("INFORMATION", "Listing all loans")
        return self._list({}, [("created_at", DESCENDING)])

    def get_loans_by_user(self, username: str) -> List[Dict[str, Any]]:
        self._log("INFORMATION", f"Listing loans of {username}")
        return self._list({"username": username}, [("created_at", DESCENDING)])

    def get_active_loans_by_user(self, username: str) -> List[Dict[str, Any]]:
        self._log("INFORMATION", f"Listing active loans of {username}")
        return self._list({"username": username, "status": LoanStatus.ACTIVE.value}, [("due_date", ASCENDING)])

    def get_by_id(self, loan_id: str, identity: Identity) -> Dict[str, Any]:
        loan = self._find(loan_id)
        if loan is None:
            self._log("WARNING", f"Loan not found: {loan_id}")
            raise NotFoundError("Loan not found")
        if not identity.is_privileged and loan["username"].lower() != identity.username.lower():
            self._log("WARNING", f"Access to loan {loan_id} denied for {identity.username}")
            raise ForbiddenError("You can only view your own loans")
        return present(loan)

    def list_overdue_loans(self) -> List[Dict[str, Any]]:
        """Loans that are overdue, swept or not.  Read only."""
        query = {
            "$or": [
                {"status": LoanStatus.OVERDUE.value},
                {"status": LoanStatus.ACTIVE.value, "due_date": {"$lt": utcnow()}},
            ]
        }
        return self._list(query, [("due_date", ASCENDING)])

    def total_active(self) -> int:
        return self.collection.count_documents({"status": LoanStatus.ACTIVE.value})

    def total_overdue(self) -> int:
        return self.collection.count_documents(
            {
                "$or": [
                    {"status": LoanStatus.OVERDUE.value},
                    {"status": LoanStatus.ACTIVE.value, "due_date": {"$lt": utcnow()}},
                ]
            }
        )

    def statistics(self) -> Dict[str, Any]:
        self._log("INFORMATION", "Computing loan statistics")
        return {
            "total_active_loans": self.total_active(),
            "total_overdue_loans": self.total_overdue(),
            "timestamp": utcnow(),
        }

    # Writes

    def _validate(self, request: LoanRequest, username: str) -> Optional[str]:
        if not self.catalog.is_available(request.book_id):
            return "The book is not available for loan"
        if request.loan_days <= 0 or request.loan_days > MAX_LOAN_DAYS:
            return f"Loan days must be between 1 and {MAX_LOAN_DAYS}"
        active = self.collection.count_documents({"username": username, "status": LoanStatus.ACTIVE.value})
        if active >= MAX_ACTIVE_LOANS_PER_USER:
            return f"Cannot have more than {MAX_ACTIVE_LOANS_PER_USER} active loans"
        duplicate = self.collection.find_one(
            {"username": username, "book_id": request.book_id, "status": LoanStatus.ACTIVE.value}
        )
        if duplicate is not None:
            return "This book is already on loan to the user"
        return None

    def create_loan(
        self, request: LoanRequest, username: str, processed_by: str
    ) -> Tuple[Optional[Dict[str, Any]], Optional[str]]:
        """Lend a copy of ``request.book_id`` to ``username``.

        Returns ``(loan, None)`` on success and ``(None, reason)`` when a
        business rule refuses the loan; nothing is written in that case.
        """
        self._log("INFORMATION", f"Processing loan of book {request.book_id} for {username}")

        reason = self._validate(request, username)
        if reason:
            self._log("WARNING", f"Loan refused: {reason}")
            return None, reason

        book = self.catalog.get(request.book_id)
        borrower = self.users.get_by_username(username)
        if book is None or borrower is None:
            self._log("WARNING", "Book or user not found for the loan")
            return None, "Book or user not found"

        now = utcnow()
        loan = Loan(
            book_id=book["id"],
            user_id=borrower["id"],
            username=username,
            book_title=book["title"],
            book_author=book["author"],
            loan_date=now,
            due_date=now + timedelta(days=min(request.loan_days, MAX_LOAN_DAYS)),
            status=LoanStatus.ACTIVE,
            notes=request.notes,
            processed_by=processed_by,
            created_at=now,
            updated_at=now,
        )
        loan_id = create_document(self.db, COLLECTION, loan)
        try:
            taken = self.catalog.adjust_availability(book["id"], -1)
        except PyMongoError as exc:
            self._log("ERROR", f"Loan {loan_id} created but availability of book {book['id']} was not updated", exc)
        else:
            if not taken:
                self._log("WARNING", f"Copy of book {book['id']} not confirmed taken for loan {loan_id}")

        self._log("INFORMATION", f"Loan created: {loan_id} for {username}")
        return present(self._find(loan_id), now), None

    def return_book(self, loan_id: str, details: ReturnDetails, processed_by: str) -> bool:
        self._log("INFORMATION", f"Processing return of loan {loan_id} by {processed_by}")
        if details.status not in RETURN_STATUSES:
            raise ValidationError("Return status must be Returned or Lost")

        loan = self._find(loan_id)
        if loan is None:
            self._log("WARNING", f"Loan not found: {loan_id}")
            return False
        if loan["status"] not in OUTSTANDING_STATUSES:
            self._log("WARNING", f"Attempt to return a loan that is not outstanding: {loan_id}")
            return False

        now = utcnow()
        result = self.collection.update_one(
            {"_id": loan["_id"]},
            {
                "$set": {
                    "return_date": now,
                    "status": details.status.value,
                    "notes": f"{loan.get('notes', '')}\nReturned: {details.notes}",
                    "updated_at": now,
                }
            },
        )
        if result.modified_count == 0:
            return False

        if details.status != LoanStatus.LOST:
            try:
                self.catalog.adjust_availability(loan["book_id"], 1)
            except PyMongoError as exc:
                self._log("ERROR", f"Loan {loan_id} returned but availability of book {loan['book_id']} was not updated", exc)

        self._log("INFORMATION", f"Loan returned: {loan_id} as {details.status.value}")
        return True

    def update_loan_status(self, loan_id: str, new_status: LoanStatus) -> bool:
        """Overwrite the status.  No transition check, no inventory change."""
        new_status = LoanStatus(new_status)
        loan = self._find(loan_id)
        if loan is None:
            return False

        if loan["status"] != new_status.value and new_status.value not in LEGAL_TRANSITIONS.get(loan["status"], set()):
            self._log("WARNING", f"Loan {loan_id} forced from {loan['status']} to {new_status.value}")

        self.collection.update_one(
            {"_id": loan["_id"]},
            {"$set": {"status": new_status.value, "updated_at": utcnow()}},
        )
        self._log("INFORMATION", f"Loan {loan_id} status set to {new_status.value}")
        return True

    def sweep_overdue(self) -> List[Dict[str, Any]]:
        """Flip every Active loan past its due date to Overdue."""
        due = get_documents(
            self.db,
            COLLECTION,
            {"status": LoanStatus.ACTIVE.value, "due_date": {"$lt": utcnow()}},
            sort=[("due_date", ASCENDING)],
        )
        swept = []
        for loan in due:
            if self.update_loan_status(loan["id"], LoanStatus.OVERDUE):
                loan["status"] = LoanStatus.OVERDUE.value
                swept.append(present(loan))
        if swept:
            self._log("INFORMATION", f"Marked {len(swept)} loan(s) overdue")
        return swept

    def get_overdue_loans(self) -> List[Dict[str, Any]]:
        self._log("INFORMATION", "Listing overdue loans")
        self.sweep_overdue()
        return self.list_overdue_loans()

    def update_loan(self, loan_id: str, changes: LoanUpdate, processed_by: str) -> bool:
        loan = self._find(loan_id)
        if loan is None:
            return False

        update: Dict[str, Any] = {"updated_at": utcnow()}
        if changes.due_date is not None:
            update["due_date"] = naive_utc(changes.due_date)
        if changes.notes:
            update["notes"] = f"{loan.get('notes', '')}\nUpdated by {processed_by}: {changes.notes}"

        self.collection.update_one({"_id": loan["_id"]}, {"$set": update})
        self._log("INFORMATION", f"Loan {loan_id} updated by {processed_by}")
        return True

    def delete_loan(self, loan_id: str) -> bool:
        loan = self._find(loan_id)
        if loan is None:
            self._log("WARNING", f"Loan not found for deletion: {loan_id}")
            return False

        if loan["status"] in OUTSTANDING_STATUSES:
            try:
                restored = self.catalog.adjust_availability(loan["book_id"], 1)
            except PyMongoError as exc:
                restored = False
                self._log("ERROR", f"Could not restore a copy of book {loan['book_id']}", exc)
            if not restored:
                self._log("WARNING", f"Copy of book {loan['book_id']} not confirmed restored for loan {loan_id}")

        result = self.collection.delete_one({"_id": loan["_id"]})
        self._log("INFORMATION", f"Loan deleted: {loan_id}")
        return result.deleted_count > 0

    def reconcile_inventory(self, book_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """Recompute ``available_copies`` from the outstanding loans.

        Returns one entry per corrected book with the old and new counter.
        """
        query: Dict[str, Any] = {"is_active": True}
        if book_id is not None:
            oid = as_object_id(book_id)
            if oid is None:
                raise NotFoundError("Book not found")
            query["_id"] = oid

        corrections = []
        for book in self.catalog.collection.find(query):
            outstanding = self.collection.count_documents(
                {"book_id": str(book["_id"]), "status": {"$in": list(OUTSTANDING_STATUSES)}}
            )
            expected = min(max(book["total_copies"] - outstanding, 0), book["total_copies"])
            if expected != book["available_copies"]:
                self.catalog.collection.update_one(
                    {"_id": book["_id"]},
                    {"$set": {"available_copies": expected, "updated_at": utcnow()}},
                )
                corrections.append(
                    {
                        "book_id": str(book["_id"]),
                        "title": book["title"],
                        "previous_available": book["available_copies"],
                        "available_copies": expected,
                        "outstanding_loans": outstanding,
                    }
                )
                self._log(
                    "WARNING",
                    f"Availability of book {book['_id']} corrected from {book['available_copies']} to {expected}",
                )
        self._log("INFORMATION", f"Inventory reconciliation corrected {len(corrections)} book(s)")
        return corrections
