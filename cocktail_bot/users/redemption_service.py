"""
칵테일 쿠폰 사용 비즈니스 로직 (UserRepository 위임)
"""

import logging
from datetime import datetime
from enum import Enum
from typing import Optional, Tuple

from ..context import OperationContext, ensure_context
from ..errors import (
    AlreadyRedeemedError,
    RepositoryError,
    UserNotFoundError,
    ValidationError,
)
from ..structured_logging import get_structured_logger, log_lookup, log_redemption
from .models import User, normalize_email, validate_email

logger = logging.getLogger(__name__)
structured_logger = get_structured_logger(__name__)


class EmailStatus(Enum):
    """이메일 조회 결과"""

    ELIGIBLE = "eligible"  # 등록됨, 미사용
    REDEEMED = "redeemed"  # 이미 사용
    NOT_FOUND = "not_found"  # 미등록
    INVALID = "invalid"  # 형식 오류


class RedemptionService:
    """쿠폰 조회/사용 서비스"""

    def __init__(self, repository):
        """
        Args:
            repository: 사용자 저장소 (UserRepository 구현체)
        """
        self.repository = repository

    def check_email_status(
        self, email: str, ctx: Optional[OperationContext] = None
    ) -> Tuple[EmailStatus, Optional[User]]:
        """
        이메일 상태 조회

        Args:
            email: 이메일 주소
            ctx: 연산 컨텍스트

        Returns:
            (EmailStatus, User 또는 None)

        Raises:
            BackendUnavailableError: 저장소 일시 장애
            InternalError: 저장소 내부 오류
        """
        normalized = normalize_email(email)
        if not validate_email(normalized):
            log_lookup(structured_logger, normalized, EmailStatus.INVALID.value)
            return EmailStatus.INVALID, None

        try:
            user = self.repository.find_by_email(normalized, ctx)
        except UserNotFoundError:
            log_lookup(
                structured_logger, normalized, EmailStatus.NOT_FOUND.value, self.repository.backend_name
            )
            return EmailStatus.NOT_FOUND, None
        except ValidationError:
            return EmailStatus.INVALID, None

        status = EmailStatus.REDEEMED if user.is_redeemed() else EmailStatus.ELIGIBLE
        log_lookup(structured_logger, normalized, status.value, self.repository.backend_name)
        return status, user

    def redeem(
        self,
        email: str,
        ctx: Optional[OperationContext] = None,
        now: Optional[datetime] = None,
    ) -> datetime:
        """
        쿠폰 사용 처리 (조회 -> 메모리 사본 표시 -> 조건부 저장)

        Args:
            email: 이메일 주소
            ctx: 연산 컨텍스트 (조회와 저장에 같은 토큰 사용)
            now: 사용 시각 (없으면 현재 시각)

        Returns:
            기록된 사용 시각

        Raises:
            ValidationError: 이메일 형식 오류
            UserNotFoundError: 미등록 이메일
            AlreadyRedeemedError: 이미 사용되었거나 동시 요청에 밀린 경우
        """
        ctx = ensure_context(ctx)
        normalized = normalize_email(email)
        if not validate_email(normalized):
            raise ValidationError("email", "invalid email format", value=email, op="redeem")

        try:
            user = self.repository.find_by_email(normalized, ctx)
            if user.is_redeemed():
                raise AlreadyRedeemedError(op="redeem", backend=self.repository.backend_name)

            redeemed_at = user.redeem(now)
            self.repository.update_user(user, ctx)
        except RepositoryError as e:
            log_redemption(structured_logger, normalized, False, error=e.kind.value)
            raise

        log_redemption(structured_logger, normalized, True, redeemed_at=redeemed_at)
        return redeemed_at

    def close(self) -> None:
        """저장소 종료"""
        self.repository.close()
        logger.info("RedemptionService 종료")
