"""
리포트 생성
종류(all / added / redeemed) + 반개구간 [from, to) 필터로 사용자 목록 조회 (읽기 전용)
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Union

from .context import OperationContext
from .errors import ValidationError
from .timeutil import parse_timestamp, to_utc

logger = logging.getLogger(__name__)


class ReportKind(Enum):
    """리포트 종류"""
    ALL = "all"
    ADDED = "added"
    REDEEMED = "redeemed"


@dataclass(frozen=True)
class ReportParams:
    """검증된 리포트 파라미터"""

    kind: ReportKind
    date_from: datetime
    date_to: datetime

    def timestamp_of(self, user) -> Optional[datetime]:
        """필터/정렬 기준 시각 (redeemed 리포트는 사용 시각, 그 외는 등록 시각)"""
        if self.kind is ReportKind.REDEEMED:
            return user.redeemed
        return user.date_added

    def includes(self, user) -> bool:
        """반개구간 [date_from, date_to) 포함 여부"""
        value = self.timestamp_of(user)
        if value is None:
            return False
        return self.date_from <= value < self.date_to


def _coerce_datetime(field: str, value: Union[str, datetime]) -> datetime:
    if isinstance(value, datetime):
        return to_utc(value)
    try:
        parsed = parse_timestamp(value)
    except ValueError:
        parsed = None
    if parsed is None:
        raise ValidationError(field, "invalid date", value=str(value))
    return parsed


def parse_report_params(
    kind: Union[str, ReportKind],
    date_from: Union[str, datetime],
    date_to: Union[str, datetime],
) -> ReportParams:
    """
    리포트 파라미터 검증 (백엔드 호출 전)

    Args:
        kind: 리포트 종류 문자열 ("all", "added", "redeemed")
        date_from: 시작 시각 (포함)
        date_to: 종료 시각 (미포함)

    Returns:
        ReportParams

    Raises:
        ValidationError: 알 수 없는 종류이거나 기간이 비어 있는 경우
    """
    if isinstance(kind, ReportKind):
        report_kind = kind
    else:
        try:
            report_kind = ReportKind(str(kind).strip().lower())
        except ValueError:
            raise ValidationError("kind", "unknown report kind", value=str(kind))

    start = _coerce_datetime("date_from", date_from)
    end = _coerce_datetime("date_to", date_to)
    if start >= end:
        raise ValidationError(
            "date_range", "date_from must be earlier than date_to", value=f"{start} - {end}"
        )

    return ReportParams(kind=report_kind, date_from=start, date_to=end)


def sort_report(params: ReportParams, users: List) -> List:
    """최신순 정렬 (동일 시각은 이메일 오름차순)"""
    ordered = sorted(users, key=lambda u: u.email)
    return sorted(ordered, key=params.timestamp_of, reverse=True)


def generate_report(
    repository,
    kind: Union[str, ReportKind],
    date_from: Union[str, datetime],
    date_to: Union[str, datetime],
    ctx: Optional[OperationContext] = None,
) -> List:
    """
    리포트 생성

    Args:
        repository: UserRepository 구현체
        kind: 리포트 종류
        date_from: 시작 시각 (포함)
        date_to: 종료 시각 (미포함)
        ctx: 연산 컨텍스트

    Returns:
        정렬된 User 사본 리스트
    """
    params = parse_report_params(kind, date_from, date_to)
    users = repository.get_report(params, ctx)
    logger.info(
        f"리포트 생성: {params.kind.value} {params.date_from.isoformat()} ~ "
        f"{params.date_to.isoformat()} ({len(users)}건)"
    )
    return users


def summarize(users: List) -> Dict[str, int]:
    """리포트 요약 카운트"""
    redeemed = sum(1 for user in users if user.is_redeemed())
    return {
        "total": len(users),
        "redeemed": redeemed,
        "eligible": len(users) - redeemed,
    }
