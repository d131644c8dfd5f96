"""
CSV 파일 스토리지 백엔드 구현
트랜잭션이 없으므로 파일 경로별 프로세스 전역 락 아래에서 전체 파일을 읽고-수정-쓰기
"""

import csv
import logging
import os
import tempfile
import threading
from typing import Dict, List, Optional, Tuple

from ..context import OperationContext
from ..errors import BackendUnavailableError, DuplicateUserError, InternalError
from ..report import ReportParams
from ..timeutil import format_timestamp, parse_timestamp
from ..users.models import User, normalize_email
from .base import UserRepository

logger = logging.getLogger(__name__)

HEADER = ["ID", "Email", "Date Added", "Redeemed"]

# 헤더 이름 -> 필드 (대소문자 무시, 레거시 헤더 포함)
_HEADER_ALIASES = {
    "id": "id",
    "email": "email",
    "date added": "date_added",
    "dateadded": "date_added",
    "redeemed": "redeemed",
    "already consumed": "redeemed",
    "alreadyconsumed": "redeemed",
}

# 같은 파일을 가리키는 모든 인스턴스가 하나의 락을 공유
_file_locks: Dict[str, threading.RLock] = {}
_file_locks_guard = threading.Lock()


def _lock_for(path: str) -> threading.RLock:
    with _file_locks_guard:
        lock = _file_locks.get(path)
        if lock is None:
            lock = threading.RLock()
            _file_locks[path] = lock
        return lock


class CSVRepository(UserRepository):
    """CSV 파일 스토리지 백엔드"""

    backend_name = "csv"

    def __init__(self, file_path: str, timeout: float = 5.0):
        """
        Args:
            file_path: CSV 파일 경로 (없으면 헤더만 가진 파일 생성)
            timeout: 파일 락 대기 시간 (초)
        """
        self.file_path = os.path.abspath(file_path)
        self.timeout = timeout
        self._lock = _lock_for(self.file_path)
        self._closed = False
        self._ensure_file()

    def _ensure_file(self):
        with self._lock:
            if os.path.exists(self.file_path):
                return
            file_dir = os.path.dirname(self.file_path)
            if file_dir:
                os.makedirs(file_dir, exist_ok=True)
            self._write_rows(list(HEADER), [])
            logger.info(f"CSV 파일 생성: {self.file_path}")

    def _acquire(self, ctx: OperationContext, op: str):
        if self._closed:
            raise InternalError("repository is closed", op=op, backend=self.backend_name)
        if not self._lock.acquire(timeout=ctx.bounded(self.timeout)):
            raise BackendUnavailableError(
                "timed out waiting for file lock", op=op, backend=self.backend_name
            )

    def _read_table(self, op: str) -> Tuple[List[str], Dict[str, int], List[List[str]]]:
        """
        전체 파일 읽기. 호출자는 락 보유

        Returns:
            (헤더, 필드 맵, 원본 행 목록). 빈 행은 제외
        """
        try:
            with open(self.file_path, newline="", encoding="utf-8") as f:
                reader = csv.reader(f)
                header = next(reader, None)
                if header is None:
                    header = list(HEADER)
                fields = self._map_header(header, op)
                rows = [row for row in reader if any(cell.strip() for cell in row)]
                return header, fields, rows
        except OSError as e:
            logger.error(f"CSV 파일 읽기 실패: {e}")
            raise BackendUnavailableError(op=op, backend=self.backend_name, cause=e) from e

    def _map_header(self, header: List[str], op: str) -> Dict[str, int]:
        fields = {}
        for index, name in enumerate(header):
            field = _HEADER_ALIASES.get(name.strip().lower())
            if field and field not in fields:
                fields[field] = index
        missing = {"id", "email", "date_added"} - set(fields)
        if missing:
            raise InternalError(
                f"missing required columns in CSV header: {', '.join(sorted(missing))}",
                op=op,
                backend=self.backend_name,
            )
        # 레거시 파일에 Redeemed 열이 없으면 끝에 추가
        if "redeemed" not in fields:
            header.append(HEADER[3])
            fields["redeemed"] = len(header) - 1
        return fields

    @staticmethod
    def _cell(fields: Dict[str, int], row: List[str], field: str) -> str:
        index = fields[field]
        return row[index].strip() if index < len(row) else ""

    def _parse_row(self, fields: Dict[str, int], row: List[str], line_no: int) -> Optional[User]:
        """행 파싱 (파싱 불가 행은 경고 후 None, 파일에는 그대로 보존)"""
        email = normalize_email(self._cell(fields, row, "email"))
        if not email:
            return None

        try:
            date_added = parse_timestamp(self._cell(fields, row, "date_added"))
            redeemed = parse_timestamp(self._cell(fields, row, "redeemed"))
        except ValueError as e:
            logger.warning(f"CSV {line_no}행 날짜 파싱 실패 ({email}): {e}")
            return None
        if date_added is None:
            logger.warning(f"CSV {line_no}행 등록 시각 없음: {email}")
            return None

        return User(
            id=self._cell(fields, row, "id"), email=email, date_added=date_added, redeemed=redeemed
        )

    def _users(self, fields: Dict[str, int], rows: List[List[str]]) -> List[User]:
        users = []
        for line_no, row in enumerate(rows, start=2):
            user = self._parse_row(fields, row, line_no)
            if user is not None:
                users.append(user)
        return users

    def _find_row(self, fields: Dict[str, int], rows: List[List[str]], email: str) -> int:
        for index, row in enumerate(rows):
            if normalize_email(self._cell(fields, row, "email")) == email:
                return index
        return -1

    def _write_rows(self, header: List[str], rows: List[List[str]]):
        """임시 파일에 쓴 뒤 os.replace (부분 쓰기 노출 방지). 호출자는 락 보유"""
        file_dir = os.path.dirname(self.file_path) or "."
        fd, tmp_path = tempfile.mkstemp(prefix=".users-", suffix=".csv", dir=file_dir)
        try:
            with os.fdopen(fd, "w", newline="", encoding="utf-8") as f:
                writer = csv.writer(f)
                writer.writerow(header)
                writer.writerows(rows)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.file_path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise

    def _save(self, header: List[str], rows: List[List[str]], op: str):
        try:
            self._write_rows(header, rows)
        except OSError as e:
            logger.error(f"CSV 파일 쓰기 실패: {e}")
            raise BackendUnavailableError(op=op, backend=self.backend_name, cause=e) from e

    # --- Users ---
    def find_by_email(self, email: str, ctx: Optional[OperationContext] = None) -> User:
        """사용자 조회"""
        op = "find_by_email"
        key = self._lookup_key(email, op)
        ctx = self._check(ctx, op)

        self._acquire(ctx, op)
        try:
            _, fields, rows = self._read_table(op)
            index = self._find_row(fields, rows, key)
            user = self._parse_row(fields, rows[index], index + 2) if index >= 0 else None
        finally:
            self._lock.release()

        if index < 0:
            raise self._not_found(op)
        if user is None:
            raise InternalError(f"row {index + 2} has unparseable dates", op=op, backend=self.backend_name)
        return user

    def add_user(self, user: User, ctx: Optional[OperationContext] = None) -> None:
        """사용자 추가 (파일 끝에 추가 후 전체 재기록)"""
        op = "add_user"
        prepared = self._prepare_new_user(user, op)
        ctx = self._check(ctx, op)

        self._acquire(ctx, op)
        try:
            header, fields, rows = self._read_table(op)
            if self._find_row(fields, rows, prepared.email) >= 0:
                logger.warning(f"이미 존재하는 사용자: {prepared.email}")
                raise DuplicateUserError(op=op, backend=self.backend_name)

            ctx.check(op)
            row = [""] * len(header)
            row[fields["id"]] = prepared.id
            row[fields["email"]] = prepared.email
            row[fields["date_added"]] = format_timestamp(prepared.date_added)
            row[fields["redeemed"]] = format_timestamp(prepared.redeemed) or ""
            rows.append(row)
            self._save(header, rows, op)
        finally:
            self._lock.release()

        logger.info(f"사용자 추가: {prepared.email} (id={prepared.id})")

    def update_user(self, user: User, ctx: Optional[OperationContext] = None) -> None:
        """사용 완료 저장 (락 안에서 미사용 상태 재확인 후 기록)"""
        op = "update_user"
        prepared = self._prepare_update(user, op)
        ctx = self._check(ctx, op)

        self._acquire(ctx, op)
        try:
            header, fields, rows = self._read_table(op)
            index = self._find_row(fields, rows, prepared.email)
            stored = self._parse_row(fields, rows[index], index + 2) if index >= 0 else None
            if index >= 0 and stored is None:
                raise InternalError(
                    f"row {index + 2} has unparseable dates", op=op, backend=self.backend_name
                )

            if prepared.redeemed is None:
                self._verify_noop_update(stored, op)
                return

            if stored is None or stored.is_redeemed():
                raise self._conditional_write_failed(stored, op)

            ctx.check(op)
            row = rows[index]
            row.extend([""] * (len(header) - len(row)))
            row[fields["redeemed"]] = format_timestamp(prepared.redeemed)
            self._save(header, rows, op)
        finally:
            self._lock.release()

        logger.info(f"사용 완료 저장: {prepared.email}")

    def get_report(
        self, params: ReportParams, ctx: Optional[OperationContext] = None
    ) -> List[User]:
        """리포트 조회"""
        op = "get_report"
        ctx = self._check(ctx, op)

        self._acquire(ctx, op)
        try:
            _, fields, rows = self._read_table(op)
        finally:
            self._lock.release()

        results = self._filter_report(params, self._users(fields, rows))
        logger.info(f"리포트 조회: {params.kind.value} ({len(results)}건)")
        return results

    def close(self) -> None:
        """열린 핸들 없음 (매 연산마다 파일을 열고 닫음)"""
        self._closed = True
