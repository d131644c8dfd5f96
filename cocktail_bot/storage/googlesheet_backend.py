"""
Google Sheets 스토리지 백엔드 구현 (스프레드시트)

원자적 조건부 쓰기가 없으므로 읽기-확인-쓰기를 락 안에서 수행한다.
- 프로세스 내부: threading.Lock
- 프로세스 간: 세마포어 셀 (기본 Lock!A1)에 "owner|만료시각" 기록 후 재확인

알려진 한계: 두 프로세스가 세마포어 셀을 거의 동시에 쓰면, 양쪽의 재확인 읽기가
API 반영 지연 때문에 각자 자신의 값을 볼 수 있다. 이 경우 중복 사용 기록이 가능하다.
"""

import logging
import re
import threading
import time
import uuid
from contextlib import contextmanager
from typing import Callable, Dict, List, Optional, Tuple

from google.auth.exceptions import TransportError
from google.oauth2 import service_account
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError
from httplib2 import HttpLib2Error

from ..context import OperationContext
from ..errors import (
    BackendUnavailableError,
    DuplicateUserError,
    InternalError,
    ValidationError,
)
from ..report import ReportParams
from ..timeutil import format_timestamp, parse_timestamp
from ..users.models import User, normalize_email
from .base import UserRepository

logger = logging.getLogger(__name__)

SCOPES = ["https://www.googleapis.com/auth/spreadsheets"]

HEADER = ["ID", "Email", "Date Added", "Redeemed"]

_HEADER_ALIASES = {
    "id": "id",
    "email": "email",
    "date added": "date_added",
    "dateadded": "date_added",
    "redeemed": "redeemed",
    "already consumed": "redeemed",
    "alreadyconsumed": "redeemed",
}

_TRANSIENT_STATUS = {429, 500, 502, 503, 504}

_NETWORK_ERRORS = (HttpError, HttpLib2Error, TransportError, OSError)

# 캐시 갱신 주기 (초)
CACHE_TTL = 300


def column_letter(index: int) -> str:
    """0부터 시작하는 열 번호를 A, B, ..., Z, AA 형식으로 변환"""
    result = ""
    index += 1
    while index > 0:
        index, remainder = divmod(index - 1, 26)
        result = chr(ord("A") + remainder) + result
    return result


def column_index(letters: str) -> int:
    """열 문자를 0부터 시작하는 번호로 변환"""
    index = 0
    for char in letters.upper():
        index = index * 26 + (ord(char) - ord("A") + 1)
    return index - 1


def parse_connection_string(connection_string: str) -> Tuple[str, str, str]:
    """
    "credentials_file:sheet_id:range" 형식 파싱

    Raises:
        ValidationError: 형식이 올바르지 않은 경우
    """
    parts = (connection_string or "").split(":", 2)
    if len(parts) != 3 or not all(part.strip() for part in parts):
        raise ValidationError(
            "connection_string",
            "expected credentials_file:sheet_id:range",
            value=connection_string,
        )
    return parts[0].strip(), parts[1].strip(), parts[2].strip()


class GoogleSheetRepository(UserRepository):
    """Google Sheets 스토리지 백엔드"""

    backend_name = "googlesheet"

    def __init__(
        self,
        sheet_id: str,
        sheet_range: str,
        credentials_file: Optional[str] = None,
        service_factory: Optional[Callable[[], object]] = None,
        lock_cell: str = "Lock!A1",
        lock_ttl: float = 30.0,
        timeout: float = 10.0,
    ):
        """
        Args:
            sheet_id: 스프레드시트 ID
            sheet_range: 데이터 범위 (예: "Users!A:D", 첫 행은 헤더)
            credentials_file: 서비스 계정 JSON 경로
            service_factory: Sheets API 서비스 생성 함수 (스레드마다 한 번 호출, 테스트용)
            lock_cell: 프로세스 간 세마포어 셀
            lock_ttl: 세마포어 만료 시간 (초, 비정상 종료 대비)
            timeout: 락 대기 시간 (초)
        """
        self.sheet_id = sheet_id
        self.sheet_range = sheet_range
        self.credentials_file = credentials_file
        self.lock_cell = lock_cell
        self.lock_ttl = lock_ttl
        self.timeout = timeout
        self._service_factory = service_factory or self._build_service
        # httplib2 전송 계층은 스레드 안전하지 않으므로 스레드별 서비스 사용
        self._local = threading.local()
        self._services: List[object] = []
        self._services_lock = threading.Lock()
        self._owner = uuid.uuid4().hex
        self._write_lock = threading.Lock()
        self._cache_lock = threading.RLock()
        self._cache: Dict[str, User] = {}
        self._unparseable: Dict[str, int] = {}
        self._last_refresh: Optional[float] = None
        self._closed = False

        self._sheet_title, self._start_col, self._start_row = self._parse_range(sheet_range)

    @classmethod
    def from_connection_string(cls, connection_string: str, **kwargs) -> "GoogleSheetRepository":
        credentials_file, sheet_id, sheet_range = parse_connection_string(connection_string)
        return cls(sheet_id, sheet_range, credentials_file=credentials_file, **kwargs)

    @staticmethod
    def _parse_range(sheet_range: str) -> Tuple[str, int, int]:
        """'Users!A:D' -> ("Users", 0, 1), 'Users!B3:E' -> ("Users", 1, 3)"""
        title, _, cells = sheet_range.rpartition("!")
        match = re.match(r"^([A-Za-z]+)(\d*)", cells)
        if not title or not match:
            raise ValidationError("sheet_range", "expected <sheet>!<range>", value=sheet_range)
        start_row = int(match.group(2)) if match.group(2) else 1
        return title, column_index(match.group(1)), start_row

    # --- API 헬퍼 ---
    def _build_service(self):
        credentials = service_account.Credentials.from_service_account_file(
            self.credentials_file, scopes=SCOPES
        )
        return build("sheets", "v4", credentials=credentials, cache_discovery=False)

    def _get_service(self):
        """Lazy loading: 현재 스레드 전용 Sheets API 서비스"""
        if self._closed:
            raise InternalError("repository is closed", backend=self.backend_name)
        service = getattr(self._local, "service", None)
        if service is None:
            service = self._service_factory()
            with self._services_lock:
                if self._closed:
                    raise InternalError("repository is closed", backend=self.backend_name)
                self._services.append(service)
            self._local.service = service
            logger.info(f"Google Sheets 서비스 생성: {self.sheet_id} ({threading.current_thread().name})")
        return service

    def _values(self):
        return self._get_service().spreadsheets().values()

    def _translate(self, e: Exception, op: str):
        status = getattr(getattr(e, "resp", None), "status", None)
        if isinstance(e, HttpError) and status not in _TRANSIENT_STATUS:
            logger.error(f"Google Sheets API 오류 ({op}): {e}")
            return InternalError("sheet api error", op=op, backend=self.backend_name, cause=e)
        logger.error(f"Google Sheets API 연결 장애 ({op}): {e}")
        return BackendUnavailableError(op=op, backend=self.backend_name, cause=e)

    def _get_values(self, cell_range: str, op: str) -> List[List[str]]:
        try:
            response = self._values().get(spreadsheetId=self.sheet_id, range=cell_range).execute()
        except _NETWORK_ERRORS as e:
            raise self._translate(e, op) from e
        return response.get("values", [])

    def _put_values(self, cell_range: str, values: List[List[str]], op: str):
        try:
            self._values().update(
                spreadsheetId=self.sheet_id,
                range=cell_range,
                valueInputOption="RAW",
                body={"values": values},
            ).execute()
        except _NETWORK_ERRORS as e:
            raise self._translate(e, op) from e

    def _cell(self, field_index: int, row_number: int) -> str:
        return f"{self._sheet_title}!{column_letter(self._start_col + field_index)}{row_number}"

    # --- 시트 파싱 ---
    def _map_header(self, header: List[str], op: str) -> Dict[str, int]:
        fields = {}
        for index, name in enumerate(header):
            field = _HEADER_ALIASES.get(str(name).strip().lower())
            if field and field not in fields:
                fields[field] = index
        missing = {"id", "email", "date_added", "redeemed"} - set(fields)
        if missing:
            raise InternalError(
                f"missing required columns in sheet header: {', '.join(sorted(missing))}",
                op=op,
                backend=self.backend_name,
            )
        return fields

    def _load(self, op: str):
        """
        시트 전체 읽기

        Returns:
            (헤더 필드 맵, [(시트 행 번호, 정규화 이메일, User 또는 None)])
        """
        values = self._get_values(self.sheet_range, op)
        if not values:
            return None, []

        fields = self._map_header(values[0], op)
        rows = []
        for offset, row in enumerate(values[1:], start=1):
            row_number = self._start_row + offset

            def cell(field: str) -> str:
                index = fields[field]
                return str(row[index]).strip() if index < len(row) else ""

            email = normalize_email(cell("email"))
            if not email:
                continue

            user = None
            try:
                date_added = parse_timestamp(cell("date_added"))
                redeemed = parse_timestamp(cell("redeemed"))
                if date_added is not None:
                    user = User(id=cell("id"), email=email, date_added=date_added, redeemed=redeemed)
                else:
                    logger.warning(f"시트 {row_number}행 등록 시각 없음: {email}")
            except ValueError as e:
                logger.warning(f"시트 {row_number}행 날짜 파싱 실패 ({email}): {e}")
            rows.append((row_number, email, user))

        return fields, rows

    def _refresh_cache(self, op: str) -> List[User]:
        _, rows = self._load(op)
        users = [user for _, _, user in rows if user is not None]
        with self._cache_lock:
            self._cache = {user.email: user for user in users}
            self._unparseable = {email: n for n, email, user in rows if user is None}
            self._last_refresh = time.monotonic()
        logger.info(f"Google Sheet 캐시 갱신: {len(users)}건")
        return users

    def _cache_is_stale(self) -> bool:
        with self._cache_lock:
            return self._last_refresh is None or time.monotonic() - self._last_refresh > CACHE_TTL

    # --- 세마포어 셀 ---
    def _read_lock_cell(self, op: str) -> Tuple[str, float]:
        values = self._get_values(self.lock_cell, op)
        raw = str(values[0][0]).strip() if values and values[0] else ""
        owner, _, expiry = raw.partition("|")
        try:
            return owner, float(expiry)
        except ValueError:
            return "", 0.0

    @contextmanager
    def _exclusive(self, ctx: OperationContext, op: str):
        """프로세스 내부 락 + 세마포어 셀 획득 (최선의 노력)"""
        wait = ctx.bounded(self.timeout)
        if not self._write_lock.acquire(timeout=wait):
            raise BackendUnavailableError("timed out waiting for sheet lock", op=op, backend=self.backend_name)
        acquired = False
        try:
            deadline = time.monotonic() + wait
            while True:
                ctx.check(op)
                owner, expiry = self._read_lock_cell(op)
                now = time.time()
                if not owner or expiry < now:
                    self._put_values(self.lock_cell, [[f"{self._owner}|{now + self.lock_ttl}"]], op)
                    confirmed_owner, _ = self._read_lock_cell(op)
                    if confirmed_owner == self._owner:
                        acquired = True
                        break
                if time.monotonic() >= deadline:
                    raise BackendUnavailableError(
                        "sheet lock is held by another writer", op=op, backend=self.backend_name
                    )
                time.sleep(0.2)
            yield
        finally:
            try:
                if acquired:
                    owner, _ = self._read_lock_cell(op)
                    if owner == self._owner:
                        self._put_values(self.lock_cell, [[""]], op)
            finally:
                self._write_lock.release()

    # --- Users ---
    def find_by_email(self, email: str, ctx: Optional[OperationContext] = None) -> User:
        """사용자 조회 (캐시, 5분마다 갱신)"""
        op = "find_by_email"
        key = self._lookup_key(email, op)
        self._check(ctx, op)

        if self._cache_is_stale():
            try:
                self._refresh_cache(op)
            except BackendUnavailableError:
                with self._cache_lock:
                    cached = self._cache.get(key)
                if cached is None:
                    raise
                logger.warning(f"캐시 갱신 실패, 캐시된 사용자 사용: {key}")
                return cached.copy()

        with self._cache_lock:
            user = self._cache.get(key)
            row_number = self._unparseable.get(key)
        if user is None and row_number is not None:
            raise InternalError(
                f"row {row_number} has unparseable dates", op=op, backend=self.backend_name
            )
        if user is None:
            raise self._not_found(op)
        return user.copy()

    def add_user(self, user: User, ctx: Optional[OperationContext] = None) -> None:
        """사용자 추가 (락 안에서 중복 확인 후 행 추가)"""
        op = "add_user"
        prepared = self._prepare_new_user(user, op)
        ctx = self._check(ctx, op)

        with self._exclusive(ctx, op):
            fields, rows = self._load(op)
            if any(email == prepared.email for _, email, _ in rows):
                logger.warning(f"이미 존재하는 사용자: {prepared.email}")
                raise DuplicateUserError(op=op, backend=self.backend_name)

            ctx.check(op)
            if fields is None:
                fields = {"id": 0, "email": 1, "date_added": 2, "redeemed": 3}
                self._put_values(self._cell(0, self._start_row), [HEADER], op)

            row = [""] * (max(fields.values()) + 1)
            row[fields["id"]] = prepared.id
            row[fields["email"]] = prepared.email
            row[fields["date_added"]] = format_timestamp(prepared.date_added)
            row[fields["redeemed"]] = format_timestamp(prepared.redeemed) or ""
            try:
                self._values().append(
                    spreadsheetId=self.sheet_id,
                    range=self.sheet_range,
                    valueInputOption="RAW",
                    insertDataOption="INSERT_ROWS",
                    body={"values": [row]},
                ).execute()
            except _NETWORK_ERRORS as e:
                raise self._translate(e, op) from e

        with self._cache_lock:
            self._cache[prepared.email] = prepared.copy()
        logger.info(f"사용자 추가: {prepared.email} (id={prepared.id})")

    def update_user(self, user: User, ctx: Optional[OperationContext] = None) -> None:
        """사용 완료 저장 (락 안에서 최신 행 재확인 후 Redeemed 셀 기록)"""
        op = "update_user"
        prepared = self._prepare_update(user, op)
        ctx = self._check(ctx, op)

        if prepared.redeemed is None:
            _, rows = self._load(op)
            stored = next((u for _, email, u in rows if email == prepared.email), None)
            self._verify_noop_update(stored, op)
            return

        with self._exclusive(ctx, op):
            fields, rows = self._load(op)
            match = next(((n, u) for n, email, u in rows if email == prepared.email), None)
            if match is None:
                raise self._not_found(op)
            row_number, stored = match
            if stored is None:
                raise InternalError(
                    f"row {row_number} has unparseable dates", op=op, backend=self.backend_name
                )
            if stored.is_redeemed():
                raise self._conditional_write_failed(stored, op)

            ctx.check(op)
            self._put_values(
                self._cell(fields["redeemed"], row_number),
                [[format_timestamp(prepared.redeemed)]],
                op,
            )
            stored.redeemed = prepared.redeemed

        with self._cache_lock:
            self._cache[stored.email] = stored.copy()
        logger.info(f"사용 완료 저장: {prepared.email}")

    def get_report(
        self, params: ReportParams, ctx: Optional[OperationContext] = None
    ) -> List[User]:
        """리포트 조회 (항상 최신 시트 기준)"""
        op = "get_report"
        self._check(ctx, op)

        results = self._filter_report(params, self._refresh_cache(op))
        logger.info(f"리포트 조회: {params.kind.value} ({len(results)}건)")
        return results

    def close(self) -> None:
        """모든 스레드의 Sheets API 서비스 해제"""
        with self._services_lock:
            services, self._services = self._services, []
            self._closed = True
        for service in services:
            if hasattr(service, "close"):
                service.close()
        self._local = threading.local()
