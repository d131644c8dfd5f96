import uuid
from abc import ABC, abstractmethod
from typing import List, Optional

from ..context import OperationContext, ensure_context
from ..errors import (
    AlreadyRedeemedError,
    OperationCancelledError,
    InternalError,
    UserNotFoundError,
    ValidationError,
)
from ..report import ReportParams, sort_report
from ..timeutil import utc_now
from ..users.models import User, normalize_email, validate_email


class UserRepository(ABC):
    """사용자 저장소 추상 인터페이스 (모든 백엔드가 동일한 의미를 보장)"""

    backend_name = "base"

    @abstractmethod
    def find_by_email(self, email: str, ctx: Optional[OperationContext] = None) -> User:
        """
        이메일로 사용자 조회 (대소문자/공백 무시)

        Raises:
            UserNotFoundError: 일치하는 사용자가 없는 경우
        """
        ...

    @abstractmethod
    def add_user(self, user: User, ctx: Optional[OperationContext] = None) -> None:
        """
        사용자 추가

        Raises:
            DuplicateUserError: 같은 이메일이 이미 존재하는 경우
        """
        ...

    @abstractmethod
    def update_user(self, user: User, ctx: Optional[OperationContext] = None) -> None:
        """
        사용 완료 상태 저장 (조건부 쓰기: 저장된 레코드가 아직 미사용일 때만)

        Raises:
            UserNotFoundError: 사용자가 없는 경우
            AlreadyRedeemedError: 다른 요청이 먼저 사용 처리한 경우
            InternalError: 사용 완료 상태를 되돌리려는 경우
        """
        ...

    @abstractmethod
    def get_report(
        self, params: ReportParams, ctx: Optional[OperationContext] = None
    ) -> List[User]:
        """리포트 조회 (전체 성공 또는 예외)"""
        ...

    @abstractmethod
    def close(self) -> None:
        """리소스 해제 (여러 번 호출해도 안전)"""
        ...

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    # --- 공통 헬퍼 ---
    def _check(self, ctx: Optional[OperationContext], op: str) -> OperationContext:
        ctx = ensure_context(ctx)
        try:
            ctx.check(op)
        except OperationCancelledError as e:
            e.backend = self.backend_name
            raise
        return ctx

    def _lookup_key(self, email: str, op: str) -> str:
        key = normalize_email(email)
        if not key:
            raise ValidationError("email", "email cannot be empty", op=op)
        return key

    def _prepare_new_user(self, user: User, op: str = "add_user") -> User:
        """추가할 사용자 사본 생성 (이메일 정규화/검증, ID/등록 시각 채움)"""
        if user is None:
            raise ValidationError("user", "user cannot be None", op=op)
        prepared = user.copy()
        if not validate_email(prepared.email):
            raise ValidationError("email", "invalid email format", value=user.email, op=op)
        if not prepared.id:
            prepared.id = uuid.uuid4().hex
        if prepared.date_added is None:
            prepared.date_added = utc_now()
        return prepared

    def _prepare_update(self, user: User, op: str = "update_user") -> User:
        if user is None:
            raise ValidationError("user", "user cannot be None", op=op)
        prepared = user.copy()
        self._lookup_key(prepared.email, op)
        return prepared

    def _verify_noop_update(self, stored: Optional[User], op: str = "update_user") -> None:
        """
        redeemed가 없는 업데이트 요청 처리

        저장된 레코드가 미사용이면 아무 것도 하지 않고,
        이미 사용 완료 상태면 되돌리기 시도로 보고 거부
        """
        if stored is None:
            raise UserNotFoundError(op=op, backend=self.backend_name)
        if stored.is_redeemed():
            raise InternalError(
                "update would clear redemption timestamp",
                op=op,
                backend=self.backend_name,
            )

    def _conditional_write_failed(self, stored: Optional[User], op: str = "update_user"):
        """조건부 쓰기 실패 원인 판별: 레코드 없음 vs 이미 사용 완료"""
        if stored is None:
            return UserNotFoundError(op=op, backend=self.backend_name)
        return AlreadyRedeemedError(op=op, backend=self.backend_name)

    def _not_found(self, op: str) -> UserNotFoundError:
        return UserNotFoundError(op=op, backend=self.backend_name)

    def _filter_report(self, params: ReportParams, users: List[User]) -> List[User]:
        return sort_report(params, [user.copy() for user in users if params.includes(user)])
