"""Book catalog.

Books are soft-deleted.  ISBN uniqueness is scoped to active books, so the
ISBN of a deleted book can be used again.  ``available_copies`` is the only
record of how many copies are checked out; the loan ledger moves it through
:meth:`BookCatalog.adjust_availability`.
"""

import re
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field
from pymongo.database import Database

from audit import AuditContext, AuditLog
from database import as_object_id, create_document, get_documents, to_str_id, utcnow
from errors import ConflictError, ValidationError
from schemas import Book

COLLECTION = "book"


class BookData(BaseModel):
    title: str
    author: str
    isbn: str = ""
    publisher: str = ""
    publication_year: Optional[int] = None
    category: str = ""
    description: str = ""
    total_copies: int = Field(1, description="Values below 1 are treated as 1 on create and ignored on update")


class BookCatalog:
    def __init__(self, db: Database, audit: AuditLog, context: AuditContext):
        self.collection = db[COLLECTION]
        self.db = db
        self.audit = audit
        self.context = context

    def _log(self, level: str, message: str, exception: Optional[BaseException] = None) -> None:
        self.audit.record(self.context, level, message, exception)

    def list(self) -> List[Dict[str, Any]]:
        self._log("INFORMATION", "Listing active books")
        return get_documents(self.db, COLLECTION, {"is_active": True}, sort=[("title", 1)])

    def get(self, book_id: str) -> Optional[Dict[str, Any]]:
        oid = as_object_id(book_id)
        if oid is None:
            self._log("WARNING", f"Book lookup with an invalid id: {book_id!r}")
            return None
        self._log("INFORMATION", f"Looking up book {book_id}")
        return to_str_id(self.collection.find_one({"_id": oid, "is_active": True}))

    def search(self, term: Optional[str]) -> List[Dict[str, Any]]:
        if not term:
            return self.list()
        self._log("INFORMATION", f"Searching books for: {term}")
        pattern = {"$regex": re.escape(term), "$options": "i"}
        query = {
            "is_active": True,
            "$or": [
                {"title": pattern},
                {"author": pattern},
                {"isbn": pattern},
                {"category": pattern},
            ],
        }
        return get_documents(self.db, COLLECTION, query, sort=[("title", 1)])

    def create(self, data: BookData, actor: str) -> Dict[str, Any]:
        if not data.title.strip() or not data.author.strip():
            self._log("WARNING", "Book creation without title or author")
            raise ValidationError("Title and author are required")

        self._log("INFORMATION", f"Creating book {data.title} for {actor}")
        if data.isbn and self.collection.find_one({"isbn": data.isbn, "is_active": True}):
            self._log("WARNING", f"Book creation with duplicate ISBN: {data.isbn}")
            raise ConflictError("Could not create the book. Possible duplicate ISBN.")

        copies = data.total_copies if data.total_copies > 0 else 1
        book = Book(
            **data.model_dump(exclude={"total_copies"}),
            total_copies=copies,
            available_copies=copies,
            created_by=actor,
        )
        book_id = create_document(self.db, COLLECTION, book)
        self._log("INFORMATION", f"Book created: {data.title} with id {book_id}")
        return to_str_id(self.collection.find_one({"_id": as_object_id(book_id)}))

    def update(self, book_id: str, data: BookData, actor: str) -> bool:
        oid = as_object_id(book_id)
        if oid is None:
            return False
        if not data.title.strip() or not data.author.strip():
            raise ValidationError("Title and author are required")

        self._log("INFORMATION", f"Updating book {book_id} for {actor}")
        changes: Dict[str, Any] = {
            "title": data.title,
            "author": data.author,
            "publisher": data.publisher,
            "publication_year": data.publication_year,
            "category": data.category,
            "description": data.description,
            "updated_at": utcnow(),
        }

        if data.total_copies > 0:
            current = self.collection.find_one({"_id": oid, "is_active": True})
            if current is not None:
                available = current["available_copies"] + (data.total_copies - current["total_copies"])
                # keep the old counts when more copies are out than the new total allows
                if available >= 0:
                    changes["total_copies"] = data.total_copies
                    changes["available_copies"] = available
                else:
                    self._log(
                        "WARNING",
                        f"Kept copy counts of book {book_id}: total {data.total_copies} is below copies on loan",
                    )

        result = self.collection.update_one({"_id": oid, "is_active": True}, {"$set": changes})
        if result.modified_count > 0:
            self._log("INFORMATION", f"Book updated: {book_id}")
            return True
        self._log("WARNING", f"Could not update book {book_id}")
        return False

    def delete(self, book_id: str, actor: str) -> bool:
        oid = as_object_id(book_id)
        if oid is None:
            return False
        self._log("INFORMATION", f"Deleting book {book_id} for {actor}")
        result = self.collection.update_one(
            {"_id": oid, "is_active": True},
            {"$set": {"is_active": False, "updated_at": utcnow()}},
        )
        if result.modified_count > 0:
            self._log("INFORMATION", f"Book deleted: {book_id}")
            return True
        self._log("WARNING", f"Could not delete book {book_id}")
        return False

    def adjust_availability(self, book_id: str, delta: int) -> bool:
        """Move ``available_copies`` by ``delta``.  Not clamped to ``[0, total]``."""
        oid = as_object_id(book_id)
        if oid is None:
            return False
        result = self.collection.update_one(
            {"_id": oid, "is_active": True},
            {"$inc": {"available_copies": delta}, "$set": {"updated_at": utcnow()}},
        )
        self._log("INFORMATION", f"Availability of book {book_id} changed by {delta}")
        return result.modified_count > 0

    def is_available(self, book_id: str) -> bool:
        book = self.get(book_id)
        return book is not None and book["available_copies"] > 0

    def availability(self, book_id: str) -> Optional[Dict[str, Any]]:
        book = self.get(book_id)
        if book is None:
            return None
        return {
            "book_id": book["id"],
            "title": book["title"],
            "is_available": book["available_copies"] > 0,
            "available_copies": book["available_copies"],
            "total_copies": book["total_copies"],
        }
