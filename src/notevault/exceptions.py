"""Custom exceptions for NoteVault.

Provides a structured exception hierarchy with error codes and
machine-readable error information for better error handling.
"""
from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(Enum):
    """Error codes for machine-readable error identification."""

    # Note errors (1xxx)
    NOTE_NOT_FOUND = 1001
    NOTE_VALIDATION_FAILED = 1002

    # Category errors (2xxx)
    CATEGORY_NOT_FOUND = 2001
    CATEGORY_NAME_CONFLICT = 2002
    CATEGORY_RESERVED = 2003

    # Source / destination errors (3xxx)
    SOURCE_NOT_FOUND = 3001
    SOURCE_UNREADABLE = 3002
    DESTINATION_UNWRITABLE = 3003
    MALFORMED_INPUT = 3004

    # Storage errors (4xxx)
    STORAGE_READ_FAILED = 4001
    STORAGE_WRITE_FAILED = 4002
    STORAGE_DELETE_FAILED = 4003
    TRANSACTION_FAILED = 4004

    # Security errors (5xxx)
    PASSWORD_REQUIRED = 5001
    PASSWORD_MISMATCH = 5002
    DECRYPTION_FAILED = 5003
    ENCRYPTION_FAILED = 5004
    KEY_FORGOTTEN = 5005
    INVALID_PASSWORD_RECORD = 5006

    # Validation errors (7xxx)
    VALIDATION_FAILED = 7001
    INVALID_MERGE_POLICY = 7002


class NoteVaultError(Exception):
    """Base exception for all NoteVault errors.

    Attributes:
        message: Human-readable error message
        code: Machine-readable error code
        details: Additional context about the error
    """

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.VALIDATION_FAILED,
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to a dictionary for serialization."""
        return {
            "error": self.__class__.__name__,
            "code": self.code.value,
            "code_name": self.code.name,
            "message": self.message,
            "details": self.details
        }

    def __str__(self) -> str:
        if self.details:
            detail_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            return f"[{self.code.name}] {self.message} ({detail_str})"
        return f"[{self.code.name}] {self.message}"


class NoteNotFoundError(NoteVaultError):
    """Raised when a note cannot be found."""

    def __init__(self, note_id: int, message: Optional[str] = None):
        super().__init__(
            message or f"Note #{note_id} not found",
            code=ErrorCode.NOTE_NOT_FOUND,
            details={"note_id": note_id}
        )
        self.note_id = note_id


class CategoryError(NoteVaultError):
    """Raised for category-related errors."""

    def __init__(
        self,
        message: str,
        category_id: Optional[int] = None,
        name: Optional[str] = None,
        code: ErrorCode = ErrorCode.CATEGORY_NAME_CONFLICT
    ):
        details: Dict[str, Any] = {}
        if category_id is not None:
            details["category_id"] = category_id
        if name:
            details["name"] = name[:100]

        super().__init__(message, code=code, details=details)
        self.category_id = category_id
        self.name = name


class ValidationError(NoteVaultError):
    """Raised for general validation errors."""

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        value: Optional[Any] = None,
        code: ErrorCode = ErrorCode.VALIDATION_FAILED
    ):
        details = {}
        if field:
            details["field"] = field
        if value is not None:
            details["value"] = str(value)[:100]

        super().__init__(message, code=code, details=details)
        self.field = field
        self.value = value


class StorageError(NoteVaultError):
    """Raised for storage/persistence errors."""

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        path: Optional[str] = None,
        code: ErrorCode = ErrorCode.STORAGE_READ_FAILED,
        original_error: Optional[Exception] = None
    ):
        details = {}
        if operation:
            details["operation"] = operation
        if path:
            # Don't expose full paths in error messages
            details["path_hint"] = path.split("/")[-1] if "/" in path else path
        if original_error:
            details["original_error"] = str(original_error)[:200]

        super().__init__(message, code=code, details=details)
        self.operation = operation
        self.path = path
        self.original_error = original_error


class TransactionFailure(StorageError):
    """Raised when the store rejects an atomic transaction.

    The transaction has been rolled back; nothing it changed is visible.
    """

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        original_error: Optional[Exception] = None
    ):
        super().__init__(
            message,
            operation=operation,
            code=ErrorCode.TRANSACTION_FAILED,
            original_error=original_error
        )


class SourceUnavailable(StorageError):
    """Raised when an import source is missing or cannot be read."""

    def __init__(
        self,
        message: str,
        path: Optional[str] = None,
        code: ErrorCode = ErrorCode.SOURCE_UNREADABLE,
        original_error: Optional[Exception] = None
    ):
        super().__init__(
            message,
            operation="read",
            path=path,
            code=code,
            original_error=original_error
        )


class DestinationUnavailable(StorageError):
    """Raised when an export destination cannot be written."""

    def __init__(
        self,
        message: str,
        path: Optional[str] = None,
        original_error: Optional[Exception] = None
    ):
        super().__init__(
            message,
            operation="write",
            path=path,
            code=ErrorCode.DESTINATION_UNWRITABLE,
            original_error=original_error
        )


class MalformedInput(NoteVaultError):
    """Raised when a backup document violates the record-set structure."""

    def __init__(
        self,
        message: str,
        element: Optional[str] = None,
        position: Optional[int] = None
    ):
        details: Dict[str, Any] = {}
        if element:
            details["element"] = element
        if position is not None:
            details["position"] = position

        super().__init__(message, code=ErrorCode.MALFORMED_INPUT, details=details)
        self.element = element
        self.position = position


class SecurityError(NoteVaultError):
    """Raised when encryption or decryption fails.

    Typical causes are corrupted ciphertext, a key that does not match the
    data, or use of a key that has already been forgotten.
    """

    def __init__(
        self,
        message: str,
        note_id: Optional[int] = None,
        code: ErrorCode = ErrorCode.DECRYPTION_FAILED,
        processed: Optional[int] = None
    ):
        details: Dict[str, Any] = {}
        if note_id is not None:
            details["note_id"] = note_id
        if processed is not None:
            details["processed"] = processed

        super().__init__(message, code=code, details=details)
        self.note_id = note_id
        self.processed = processed


class PasswordError(NoteVaultError):
    """Base class for password problems that are reported as rejections."""


class PasswordRequired(PasswordError):
    """Raised when an operation needs a password that was not supplied."""

    def __init__(self, message: str = "A password is required"):
        super().__init__(message, code=ErrorCode.PASSWORD_REQUIRED)


class PasswordMismatch(PasswordError):
    """Raised when a supplied password does not match the stored hash."""

    def __init__(self, message: str = "The password is incorrect"):
        super().__init__(message, code=ErrorCode.PASSWORD_MISMATCH)
