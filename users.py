"""User directory.

Users are never hard-deleted.  Username and email uniqueness is checked
against every stored user, active or not, so deactivating an account does
not free its name.
"""

from typing import Any, Dict, List, Optional

from pymongo.database import Database

from audit import AuditContext, AuditLog
from database import as_object_id, create_document, get_documents, to_str_id
from errors import ConflictError, ValidationError
from schemas import Role, User
from security import PASSWORD_POLICY, hash_password, is_valid_email, is_valid_password

COLLECTION = "user"

ASSIGNABLE_ROLES = (Role.LIBRARIAN.value, Role.ADMINISTRATOR.value)


def public_user(doc: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": doc["id"],
        "username": doc["username"],
        "email": doc["email"],
        "role": doc["role"],
    }


class UserDirectory:
    def __init__(self, db: Database, audit: AuditLog, context: AuditContext):
        self.collection = db[COLLECTION]
        self.db = db
        self.audit = audit
        self.context = context

    def get_by_username(self, username: str) -> Optional[Dict[str, Any]]:
        return to_str_id(self.collection.find_one({"username": username, "is_active": True}))

    def find_by_username(self, username: str) -> Optional[Dict[str, Any]]:
        """Look up a user whether or not they are active.  Audited."""
        self.audit.record(self.context, "INFORMATION", f"Looking up user {username} including inactive accounts")
        return to_str_id(self.collection.find_one({"username": username}))

    def get_by_id(self, user_id: str) -> Optional[Dict[str, Any]]:
        oid = as_object_id(user_id)
        if oid is None:
            return None
        return to_str_id(self.collection.find_one({"_id": oid, "is_active": True}))

    def list_active(self) -> List[Dict[str, Any]]:
        return get_documents(self.db, COLLECTION, {"is_active": True}, sort=[("username", 1)])

    def list_by_role(self, role: str) -> List[Dict[str, Any]]:
        return get_documents(self.db, COLLECTION, {"role": role, "is_active": True}, sort=[("username", 1)])

    def create(self, username: str, email: str, password: str, role: str = Role.REGISTERED_USER.value) -> Dict[str, Any]:
        if self.collection.find_one({"username": username}):
            self.audit.record(self.context, "WARNING", f"Registration attempt for existing user: {username}")
            raise ConflictError("User already exists")
        if self.collection.find_one({"email": email}):
            self.audit.record(self.context, "WARNING", f"Registration attempt with an email already in use: {username}")
            raise ConflictError("User already exists")

        user = User(username=username, email=email, password_hash=hash_password(password), role=role)
        user_id = create_document(self.db, COLLECTION, user)
        self.audit.record(self.context, "INFORMATION", f"User created: {username} ({role})")
        return to_str_id(self.collection.find_one({"_id": as_object_id(user_id)}))

    def update(self, user_id: str, email: Optional[str] = None, new_password: Optional[str] = None) -> bool:
        oid = as_object_id(user_id)
        if oid is None:
            return False

        changes: Dict[str, Any] = {}
        if email:
            email = email.strip().lower()
            if not is_valid_email(email):
                raise ValidationError("Invalid email format")
            if self.collection.find_one({"email": email, "_id": {"$ne": oid}}):
                raise ConflictError("Email already in use")
            changes["email"] = email
        if new_password:
            if not is_valid_password(new_password):
                raise ValidationError(PASSWORD_POLICY)
            changes["password_hash"] = hash_password(new_password)
        if not changes:
            raise ValidationError("No fields to update")

        result = self.collection.update_one({"_id": oid}, {"$set": changes})
        if result.matched_count:
            self.audit.record(self.context, "INFORMATION", f"User {user_id} updated: {', '.join(sorted(changes))}")
        return result.matched_count > 0

    def update_role(self, user_id: str, new_role: str) -> bool:
        if new_role not in ASSIGNABLE_ROLES:
            self.audit.record(self.context, "WARNING", f"Refused to assign role {new_role} to user {user_id}")
            raise ValidationError("Invalid role specified")
        oid = as_object_id(user_id)
        if oid is None:
            return False
        result = self.collection.update_one({"_id": oid}, {"$set": {"role": new_role}})
        if result.matched_count:
            self.audit.record(self.context, "INFORMATION", f"User {user_id} role set to {new_role}")
        return result.matched_count > 0

    def deactivate(self, user_id: str) -> bool:
        oid = as_object_id(user_id)
        if oid is None:
            return False
        result = self.collection.update_one({"_id": oid}, {"$set": {"is_active": False}})
        if result.matched_count:
            self.audit.record(self.context, "INFORMATION", f"User {user_id} deactivated")
        return result.matched_count > 0
