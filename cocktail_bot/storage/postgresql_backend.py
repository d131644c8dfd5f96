"""
PostgreSQL 스토리지 백엔드 구현
커넥션 풀 + 조건부 UPDATE, 일시 장애(연결 끊김/풀 타임아웃)만 tenacity로 재시도
"""

import logging
import threading
from typing import Callable, List, Optional, TypeVar

import psycopg
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout
from tenacity import (
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ..context import OperationContext
from ..errors import BackendUnavailableError, DuplicateUserError, InternalError
from ..report import ReportKind, ReportParams
from ..users.models import User
from .base import UserRepository

logger = logging.getLogger(__name__)

T = TypeVar("T")

_COLUMNS = "id, email, date_added, redeemed"

_TRANSIENT_ERRORS = (psycopg.OperationalError, PoolTimeout)

_DDL = [
    """
    CREATE TABLE IF NOT EXISTS users (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        date_added TIMESTAMPTZ NOT NULL,
        redeemed TIMESTAMPTZ NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_users_redeemed ON users (redeemed)",
    "CREATE INDEX IF NOT EXISTS idx_users_date_added ON users (date_added)",
]


class PostgreSQLRepository(UserRepository):
    """PostgreSQL 스토리지 백엔드"""

    backend_name = "postgresql"

    def __init__(
        self,
        dsn: str,
        timeout: float = 5.0,
        min_size: int = 1,
        max_size: int = 10,
        retry_attempts: int = 3,
    ):
        """
        Args:
            dsn: PostgreSQL 접속 문자열
            timeout: 커넥션 대기 및 쿼리 타임아웃 기본값 (초)
            min_size: 풀 최소 커넥션 수
            max_size: 풀 최대 커넥션 수
            retry_attempts: 일시 장애 시 최대 시도 횟수
        """
        if not dsn:
            raise InternalError("PostgreSQL DSN is required", backend=self.backend_name)
        self.dsn = dsn
        self.timeout = timeout
        self.min_size = min_size
        self.max_size = max(max_size, min_size)
        self.retry_attempts = max(retry_attempts, 1)
        self._pool: Optional[ConnectionPool] = None
        self._pool_lock = threading.RLock()
        self._closed = False

    # --- 커넥션 풀 ---
    def _ensure_pool(self) -> ConnectionPool:
        """Lazy 풀 생성 + SELECT 1 검증 + 스키마 준비"""
        with self._pool_lock:
            if self._closed:
                raise InternalError("repository is closed", backend=self.backend_name)
            if self._pool is not None:
                return self._pool

            pool = ConnectionPool(
                conninfo=self.dsn,
                min_size=self.min_size,
                max_size=self.max_size,
                timeout=self.timeout,
                open=False,
            )
            try:
                pool.open(wait=True, timeout=self.timeout)
                with pool.connection() as conn:
                    conn.execute("SELECT 1")
                    for statement in _DDL:
                        conn.execute(statement)
            except Exception:
                pool.close()
                raise

            self._pool = pool
            logger.info(
                f"PostgreSQL 연결 및 스키마 준비 완료 (pool {self.min_size}-{self.max_size})"
            )
            return pool

    def _run(self, fn: Callable[[psycopg.Cursor], T], ctx: OperationContext, op: str) -> T:
        """
        트랜잭션 하나로 fn 실행

        일시 장애만 재시도하며, 저장소 오류(중복/이미 사용 등)는 재시도하지 않음

        Args:
            fn: 커서를 받아 결과를 반환하는 함수
            ctx: 연산 컨텍스트 (시도마다 취소 여부 확인, statement_timeout 설정)
            op: 연산 이름

        Returns:
            fn의 반환값
        """
        retrying = Retrying(
            stop=stop_after_attempt(self.retry_attempts),
            wait=wait_exponential(multiplier=0.2, max=2),
            retry=retry_if_exception_type(_TRANSIENT_ERRORS),
            before_sleep=lambda state: logger.warning(
                f"PostgreSQL 재시도 ({op}, 시도 {state.attempt_number}/"
                f"{self.retry_attempts}): {state.outcome.exception()}"
            ),
            reraise=True,
        )
        try:
            for attempt in retrying:
                with attempt:
                    ctx.check(op)
                    pool = self._ensure_pool()
                    timeout = ctx.bounded(self.timeout)
                    with pool.connection(timeout=timeout) as conn:
                        with conn.cursor(row_factory=dict_row) as cur:
                            cur.execute(
                                "SELECT set_config('statement_timeout', %s, true)",
                                (str(max(int(timeout * 1000), 1)),),
                            )
                            return fn(cur)
        except _TRANSIENT_ERRORS as e:
            logger.error(f"PostgreSQL 연결 장애 ({op}): {e}")
            raise BackendUnavailableError(op=op, backend=self.backend_name, cause=e) from e
        except psycopg.Error as e:
            logger.error(f"PostgreSQL 오류 ({op}): {e}")
            raise InternalError("database error", op=op, backend=self.backend_name, cause=e) from e

    @staticmethod
    def _select(cur: psycopg.Cursor, email: str) -> Optional[User]:
        cur.execute(f"SELECT {_COLUMNS} FROM users WHERE email = %s", (email,))
        row = cur.fetchone()
        return User.from_item(row) if row else None

    # --- Users ---
    def find_by_email(self, email: str, ctx: Optional[OperationContext] = None) -> User:
        """사용자 조회"""
        op = "find_by_email"
        key = self._lookup_key(email, op)
        ctx = self._check(ctx, op)

        user = self._run(lambda cur: self._select(cur, key), ctx, op)
        if user is None:
            logger.info(f"사용자 없음: {key}")
            raise self._not_found(op)
        return user

    def add_user(self, user: User, ctx: Optional[OperationContext] = None) -> None:
        """사용자 추가 (ON CONFLICT DO NOTHING + rowcount로 중복 판별)"""
        op = "add_user"
        prepared = self._prepare_new_user(user, op)
        ctx = self._check(ctx, op)

        def insert(cur) -> int:
            cur.execute(
                f"""
                INSERT INTO users ({_COLUMNS}) VALUES (%s, %s, %s, %s)
                ON CONFLICT DO NOTHING
            """,
                (prepared.id, prepared.email, prepared.date_added, prepared.redeemed),
            )
            return cur.rowcount

        if self._run(insert, ctx, op) == 0:
            logger.warning(f"이미 존재하는 사용자: {prepared.email}")
            raise DuplicateUserError(op=op, backend=self.backend_name)

        logger.info(f"사용자 추가: {prepared.email} (id={prepared.id})")

    def update_user(self, user: User, ctx: Optional[OperationContext] = None) -> None:
        """사용 완료 저장 (UPDATE ... WHERE redeemed IS NULL)"""
        op = "update_user"
        prepared = self._prepare_update(user, op)
        ctx = self._check(ctx, op)

        if prepared.redeemed is None:
            self._verify_noop_update(
                self._run(lambda cur: self._select(cur, prepared.email), ctx, op), op
            )
            return

        attempts = []

        def conditional_update(cur):
            attempts.append(1)
            cur.execute(
                "UPDATE users SET redeemed = %s WHERE email = %s AND redeemed IS NULL",
                (prepared.redeemed, prepared.email),
            )
            if cur.rowcount > 0:
                return True, None
            return False, self._select(cur, prepared.email)

        updated, stored = self._run(conditional_update, ctx, op)
        if not updated:
            # 재시도 중 이전 시도의 커밋이 이미 반영된 경우 (응답만 유실)
            own_write = (
                len(attempts) > 1
                and stored is not None
                and stored.redeemed == prepared.redeemed
            )
            if not own_write:
                raise self._conditional_write_failed(stored, op)

        logger.info(f"사용 완료 저장: {prepared.email}")

    def get_report(
        self, params: ReportParams, ctx: Optional[OperationContext] = None
    ) -> List[User]:
        """리포트 조회"""
        op = "get_report"
        ctx = self._check(ctx, op)
        column = "redeemed" if params.kind is ReportKind.REDEEMED else "date_added"

        def query(cur):
            cur.execute(
                f"""
                SELECT {_COLUMNS} FROM users
                WHERE {column} IS NOT NULL AND {column} >= %s AND {column} < %s
                ORDER BY {column} DESC, email ASC
            """,
                (params.date_from, params.date_to),
            )
            return cur.fetchall()

        results = [User.from_item(row) for row in self._run(query, ctx, op)]
        logger.info(f"리포트 조회: {params.kind.value} ({len(results)}건)")
        return results

    def close(self) -> None:
        """커넥션 풀 종료"""
        with self._pool_lock:
            self._closed = True
            pool = self._pool
            self._pool = None
        if pool is not None:
            pool.close()
            logger.info("PostgreSQL 커넥션 풀 종료")
