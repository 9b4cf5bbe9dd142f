from __future__ import annotations


class LedgerError(Exception):
    """Expected business failure, reported to the caller as a failed result."""

    code = "ledger_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class Unauthenticated(LedgerError):
    code = "unauthenticated"


class Forbidden(LedgerError, PermissionError):
    code = "forbidden"


class NotFound(LedgerError):
    code = "not_found"


class InvalidInput(LedgerError):
    code = "invalid_input"


class InvalidSplit(LedgerError):
    code = "invalid_split"


class AlreadySettled(LedgerError):
    code = "already_settled"


class AlreadyMember(LedgerError):
    code = "already_member"


class InvalidInvitation(LedgerError):
    code = "invalid_invitation"


class InvalidState(LedgerError):
    code = "invalid_state"


class NotificationError(Exception):
    pass
