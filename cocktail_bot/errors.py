"""
저장소 오류 분류
백엔드 고유 예외는 어댑터 경계에서 이 분류로 변환된다
"""

from enum import Enum
from typing import Optional


class ErrorKind(Enum):
    """오류 종류"""

    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    ALREADY_REDEEMED = "already_redeemed"
    UNAVAILABLE = "unavailable"
    VALIDATION = "validation"
    CANCELLED = "cancelled"
    INTERNAL = "internal"


class RepositoryError(Exception):
    """저장소 오류 기본 클래스"""

    kind = ErrorKind.INTERNAL
    default_message = "internal server error"

    def __init__(
        self,
        message: Optional[str] = None,
        op: str = "",
        backend: str = "",
        cause: Optional[BaseException] = None,
    ):
        """
        Args:
            message: 사람이 읽을 수 있는 메시지 (없으면 종류별 기본 메시지)
            op: 수행 중이던 연산 이름 (find_by_email 등)
            backend: 백엔드 이름 (sqlite, dynamodb 등)
            cause: 원인이 된 하위 예외
        """
        self.message = message or self.default_message
        self.op = op
        self.backend = backend
        self.cause = cause
        super().__init__(self.message)

    def __str__(self) -> str:
        text = self.message
        if self.cause is not None:
            text = f"{text}: {self.cause}"
        details = []
        if self.backend:
            details.append(f"db: {self.backend}")
        if self.op:
            details.append(f"op: {self.op}")
        if details:
            text = f"{text} ({', '.join(details)})"
        return text

    @property
    def is_retryable(self) -> bool:
        """일시적 장애만 재시도 대상"""
        return self.kind is ErrorKind.UNAVAILABLE


class UserNotFoundError(RepositoryError):
    kind = ErrorKind.NOT_FOUND
    default_message = "user email not found in database"


class DuplicateUserError(RepositoryError):
    kind = ErrorKind.CONFLICT
    default_message = "user email already exists"


class AlreadyRedeemedError(RepositoryError):
    kind = ErrorKind.ALREADY_REDEEMED
    default_message = "cocktail already redeemed"


class BackendUnavailableError(RepositoryError):
    kind = ErrorKind.UNAVAILABLE
    default_message = "database is temporarily unavailable, try later"


class OperationCancelledError(RepositoryError):
    kind = ErrorKind.CANCELLED
    default_message = "operation cancelled"


class InternalError(RepositoryError):
    kind = ErrorKind.INTERNAL


class ValidationError(RepositoryError):
    """입력 검증 실패 (I/O 이전에 거부)"""

    kind = ErrorKind.VALIDATION
    default_message = "invalid input"

    def __init__(self, field: str, message: str, value: Optional[str] = None, op: str = ""):
        self.field = field
        self.value = value
        super().__init__(message, op=op)

    def __str__(self) -> str:
        if self.value:
            return f"validation failed for {self.field}: {self.message} (value: {self.value})"
        return f"validation failed for {self.field}: {self.message}"


def _has_kind(err: BaseException, kind: ErrorKind) -> bool:
    return isinstance(err, RepositoryError) and err.kind is kind


def is_not_found(err: BaseException) -> bool:
    return _has_kind(err, ErrorKind.NOT_FOUND)


def is_conflict(err: BaseException) -> bool:
    return _has_kind(err, ErrorKind.CONFLICT)


def is_already_redeemed(err: BaseException) -> bool:
    return _has_kind(err, ErrorKind.ALREADY_REDEEMED)


def is_unavailable(err: BaseException) -> bool:
    return _has_kind(err, ErrorKind.UNAVAILABLE)


def is_validation_error(err: BaseException) -> bool:
    return _has_kind(err, ErrorKind.VALIDATION)


def is_cancelled(err: BaseException) -> bool:
    return _has_kind(err, ErrorKind.CANCELLED)
