"""
이메일 일괄 등록 (CSV 등에서 읽은 목록을 검증/중복 제거 후 저장소에 추가)
"""

import csv
import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

from .context import OperationContext, ensure_context
from .errors import DuplicateUserError, ValidationError
from .structured_logging import get_structured_logger, log_import_finished
from .users.models import User, normalize_email, validate_email

logger = logging.getLogger(__name__)
structured_logger = get_structured_logger(__name__)


@dataclass
class ImportResult:
    """일괄 등록 결과"""

    added: int = 0
    invalid: int = 0
    duplicates: int = 0  # 입력 목록 내 중복
    existing: int = 0  # 저장소에 이미 존재
    invalid_emails: List[str] = field(default_factory=list)
    duplicate_emails: List[str] = field(default_factory=list)

    def counts(self) -> Dict[str, int]:
        return {
            "added": self.added,
            "invalid": self.invalid,
            "duplicates": self.duplicates,
            "existing": self.existing,
        }


def import_emails(
    repository,
    emails: Iterable[str],
    ctx: Optional[OperationContext] = None,
    source: str = "",
) -> ImportResult:
    """
    이메일 목록 등록

    Args:
        repository: UserRepository 구현체
        emails: 이메일 주소 목록
        ctx: 연산 컨텍스트 (전체 등록에 공유)
        source: 로그용 출처 (파일 경로 등)

    Returns:
        ImportResult

    Raises:
        BackendUnavailableError: 저장소 장애 (이미 추가된 사용자는 유지)
    """
    ctx = ensure_context(ctx)
    result = ImportResult()
    seen = set()

    for raw in emails:
        email = normalize_email(raw)
        if not email:
            continue

        if not validate_email(email):
            logger.warning(f"잘못된 이메일 형식: {raw}")
            result.invalid += 1
            result.invalid_emails.append(raw.strip())
            continue

        if email in seen:
            result.duplicates += 1
            result.duplicate_emails.append(email)
            continue
        seen.add(email)

        try:
            repository.add_user(User.create_new(email), ctx)
            result.added += 1
        except DuplicateUserError:
            result.existing += 1
        except ValidationError as e:
            logger.warning(f"등록 거부: {email} ({e})")
            result.invalid += 1
            result.invalid_emails.append(email)

    log_import_finished(structured_logger, source or "<iterable>", result.counts())
    return result


def read_emails_from_csv(path: str, column: int = 1, has_header: bool = True) -> List[str]:
    """
    CSV 파일에서 이메일 열 읽기

    Args:
        path: CSV 파일 경로
        column: 이메일 열 번호 (1부터 시작)
        has_header: 첫 행이 헤더인지 여부

    Returns:
        이메일 문자열 리스트 (빈 셀 제외)

    Raises:
        ValueError: column이 1보다 작은 경우
    """
    if column < 1:
        raise ValueError(f"열 번호는 1 이상이어야 합니다: {column}")

    emails = []
    with open(path, newline="", encoding="utf-8-sig") as f:
        reader = csv.reader(f)
        if has_header:
            next(reader, None)
        for row in reader:
            if len(row) >= column and row[column - 1].strip():
                emails.append(row[column - 1].strip())

    logger.info(f"CSV에서 이메일 {len(emails)}건 읽음: {path}")
    return emails
