"""
Role-Based Access Control (RBAC) Module

Roles, identities, and the single policy table consulted before every
sensitive or mutating operation. Roles are matched once here instead of
being re-derived at each call site.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional

from .errors import PermissionDeniedError
from .logging_config import get_logger, log_action


class Role(Enum):
    """Authorization classification of an authenticated identity"""
    ADMIN = "admin"
    EMPLOYEE = "employee"
    USER = "user"


@dataclass(frozen=True)
class Identity:
    """
    Authenticated caller: ``Admin | Employee(id) | User(accountNo)``

    For employees ``id`` is the employee id, for users it is their own
    account number. Admins carry the fixed id ``ADMIN``.
    """
    role: Role
    id: str

    @classmethod
    def admin(cls) -> 'Identity':
        return cls(Role.ADMIN, "ADMIN")

    @classmethod
    def employee(cls, employee_id: str) -> 'Identity':
        return cls(Role.EMPLOYEE, employee_id)

    @classmethod
    def user(cls, acc_no: str) -> 'Identity':
        return cls(Role.USER, acc_no)

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN

    @property
    def is_employee(self) -> bool:
        return self.role == Role.EMPLOYEE

    @property
    def is_user(self) -> bool:
        return self.role == Role.USER

    @property
    def label(self) -> str:
        """Actor label used in audit lines, e.g. ``EMP:employee1``"""
        if self.is_admin:
            return "ADMIN"
        if self.is_employee:
            return f"EMP:{self.id}"
        return f"USER:{self.id}"


class Operation(Enum):
    """Operations subject to authorization"""
    CREATE_ACCOUNT = "create_account"
    DELETE_ACCOUNT = "delete_account"
    DEPOSIT = "deposit"
    WITHDRAW = "withdraw"
    VIEW_ALL_ACCOUNTS = "view_all_accounts"
    VIEW_ACCOUNT = "view_account"
    APPLY_LOAN = "apply_loan"
    VIEW_LOANS = "view_loans"
    APPROVE_LOAN = "approve_loan"
    REJECT_LOAN = "reject_loan"
    VIEW_AUDIT_LOG = "view_audit_log"
    CLEAR_AUDIT_LOG = "clear_audit_log"
    SAVE_SNAPSHOT = "save_snapshot"


class Scope(Enum):
    """How far a granted operation reaches"""
    ANY = "any"  # Any target
    OWN = "own"  # Only the caller's own account (users) or own submissions (employees)


POLICY: Dict[Operation, Dict[Role, Scope]] = {
    Operation.CREATE_ACCOUNT: {Role.ADMIN: Scope.ANY, Role.EMPLOYEE: Scope.ANY},
    Operation.DELETE_ACCOUNT: {Role.ADMIN: Scope.ANY},
    Operation.DEPOSIT: {Role.ADMIN: Scope.ANY, Role.EMPLOYEE: Scope.ANY, Role.USER: Scope.OWN},
    Operation.WITHDRAW: {Role.ADMIN: Scope.ANY, Role.EMPLOYEE: Scope.ANY, Role.USER: Scope.OWN},
    Operation.VIEW_ALL_ACCOUNTS: {Role.ADMIN: Scope.ANY},
    Operation.VIEW_ACCOUNT: {Role.ADMIN: Scope.ANY, Role.EMPLOYEE: Scope.ANY, Role.USER: Scope.OWN},
    Operation.APPLY_LOAN: {Role.ADMIN: Scope.ANY, Role.EMPLOYEE: Scope.ANY, Role.USER: Scope.OWN},
    # Employees see loans they submitted, users loans they applied for
    Operation.VIEW_LOANS: {Role.ADMIN: Scope.ANY, Role.EMPLOYEE: Scope.OWN, Role.USER: Scope.OWN},
    Operation.APPROVE_LOAN: {Role.ADMIN: Scope.ANY},
    Operation.REJECT_LOAN: {Role.ADMIN: Scope.ANY},
    Operation.VIEW_AUDIT_LOG: {Role.ADMIN: Scope.ANY},
    Operation.CLEAR_AUDIT_LOG: {Role.ADMIN: Scope.ANY},
    Operation.SAVE_SNAPSHOT: {Role.ADMIN: Scope.ANY},
}


class AuthorizationGuard:
    """Stateless (role, operation) -> allow/deny check over POLICY"""

    def __init__(self, policy: Optional[Dict[Operation, Dict[Role, Scope]]] = None):
        self.policy = policy if policy is not None else POLICY
        self.logger = get_logger("bankdesk.rbac")

    def scope_for(self, identity: Identity, operation: Operation) -> Optional[Scope]:
        """Scope granted to the identity's role, None if not granted at all"""
        return self.policy.get(operation, {}).get(identity.role)

    def is_allowed(self, identity: Identity, operation: Operation,
                   target_acc_no: Optional[str] = None) -> bool:
        """
        Check an operation without raising.

        For user-scoped account operations ``target_acc_no`` must be the
        user's own account number.
        """
        scope = self.scope_for(identity, operation)
        if scope is None:
            return False
        if scope == Scope.OWN and identity.is_user and target_acc_no is not None:
            return target_acc_no.strip() == identity.id
        return True

    def check(self, identity: Identity, operation: Operation,
              target_acc_no: Optional[str] = None) -> Scope:
        """
        Raise unless the operation is allowed.

        Returns:
            The granted scope, so callers can narrow listings

        Raises:
            PermissionDeniedError: role lacks the operation, or a user
                targets someone else's account
        """
        if not self.is_allowed(identity, operation, target_acc_no):
            log_action(
                self.logger, "warning", f"Permission denied: {operation.value}",
                actor=identity.label, action=operation.value,
                resource=f"account:{target_acc_no}" if target_acc_no else None
            )
            if self.scope_for(identity, operation) == Scope.OWN:
                raise PermissionDeniedError(
                    f"{identity.role.value} may only {operation.value} on their own account"
                )
            raise PermissionDeniedError(
                f"{identity.role.value} is not allowed to {operation.value}"
            )
        return self.scope_for(identity, operation)

    def permitted_operations(self, identity: Identity) -> List[Operation]:
        """Operations the identity's role may perform in some scope"""
        return [op for op in Operation if self.scope_for(identity, op) is not None]
