"""
SQLite 스토리지 백엔드 구현
단일 공유 커넥션 + 조건부 UPDATE (redeemed IS NULL)로 중복 사용 방지
"""

import logging
import os
import sqlite3
import threading
from contextlib import contextmanager
from typing import List, Optional

from ..context import OperationContext
from ..errors import BackendUnavailableError, DuplicateUserError, InternalError
from ..report import ReportKind, ReportParams
from ..timeutil import format_timestamp
from ..users.models import User
from .base import UserRepository

logger = logging.getLogger(__name__)

_COLUMNS = "id, email, date_added, redeemed"


def _is_busy(e: sqlite3.OperationalError) -> bool:
    """잠금 경합 (database is locked / busy)만 일시 장애로 간주"""
    message = str(e).lower()
    return "locked" in message or "busy" in message


class SQLiteRepository(UserRepository):
    """SQLite 스토리지 백엔드"""

    backend_name = "sqlite"

    def __init__(self, db_path: str, timeout: float = 5.0):
        """
        Args:
            db_path: SQLite DB 파일 경로 (":memory:" 가능)
            timeout: busy 대기 시간 (초)
        """
        self.db_path = db_path
        self.timeout = timeout
        self._connection = None
        self._tables_created = False
        self._closed = False
        self._lock = threading.Lock()

    def _get_connection(self):
        """Lazy connection: DB 커넥션 생성 (이미 생성된 경우 재사용). 호출자는 _lock 보유"""
        if self._closed:
            raise InternalError("repository is closed", backend=self.backend_name)

        if self._connection is None:
            if self.db_path != ":memory:":
                db_dir = os.path.dirname(self.db_path)
                if db_dir:
                    os.makedirs(db_dir, exist_ok=True)

            # 여러 스레드가 공유 (직렬화는 _lock으로)
            self._connection = sqlite3.connect(
                self.db_path, check_same_thread=False, timeout=self.timeout
            )

            if self.db_path != ":memory:":
                self._connection.execute("PRAGMA journal_mode=WAL")

            logger.info(f"SQLite DB 연결: {self.db_path}")

            if not self._tables_created:
                self._create_tables_impl()

        return self._connection

    def _create_tables_impl(self):
        """테이블 자동 생성 (내부 구현)"""
        cursor = self._connection.cursor()

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS users (
                id TEXT PRIMARY KEY,
                email TEXT UNIQUE NOT NULL,
                date_added TEXT NOT NULL,
                redeemed TEXT
            )
        """)

        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_users_redeemed
            ON users(redeemed)
        """)

        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_users_date_added
            ON users(date_added)
        """)

        self._connection.commit()
        self._tables_created = True
        logger.info("SQLite 테이블 생성 완료")

    @contextmanager
    def _session(self, ctx: OperationContext, op: str):
        """
        락 획득 후 커넥션 제공

        블록 안에서 발생한 sqlite3 예외는 롤백 후 저장소 오류로 변환
        (IntegrityError는 호출자가 직접 처리)
        """
        if not self._lock.acquire(timeout=ctx.bounded(self.timeout)):
            raise BackendUnavailableError(
                "timed out waiting for database lock", op=op, backend=self.backend_name
            )
        try:
            conn = self._get_connection()
            try:
                yield conn
            except sqlite3.Error:
                conn.rollback()
                raise
        except sqlite3.OperationalError as e:
            if not _is_busy(e):
                logger.error(f"SQLite 오류 ({op}): {e}")
                raise InternalError("database error", op=op, backend=self.backend_name, cause=e) from e
            logger.error(f"SQLite 일시 장애 ({op}): {e}")
            raise BackendUnavailableError(op=op, backend=self.backend_name, cause=e) from e
        except sqlite3.IntegrityError:
            raise
        except sqlite3.Error as e:
            logger.error(f"SQLite 오류 ({op}): {e}")
            raise InternalError("database error", op=op, backend=self.backend_name, cause=e) from e
        finally:
            self._lock.release()

    def _select(self, conn, email: str) -> Optional[User]:
        cursor = conn.cursor()
        cursor.execute(f"SELECT {_COLUMNS} FROM users WHERE email = ?", (email,))
        row = cursor.fetchone()
        if row:
            columns = [description[0] for description in cursor.description]
            return User.from_item(dict(zip(columns, row)))
        return None

    # --- Users ---
    def find_by_email(self, email: str, ctx: Optional[OperationContext] = None) -> User:
        """사용자 조회"""
        op = "find_by_email"
        key = self._lookup_key(email, op)
        ctx = self._check(ctx, op)

        with self._session(ctx, op) as conn:
            user = self._select(conn, key)

        if user is None:
            logger.info(f"사용자 없음: {key}")
            raise self._not_found(op)
        return user

    def add_user(self, user: User, ctx: Optional[OperationContext] = None) -> None:
        """사용자 추가 (이메일 중복 시 DuplicateUserError)"""
        op = "add_user"
        prepared = self._prepare_new_user(user, op)
        ctx = self._check(ctx, op)

        try:
            with self._session(ctx, op) as conn:
                ctx.check(op)
                conn.execute(
                    f"INSERT INTO users ({_COLUMNS}) VALUES (?, ?, ?, ?)",
                    (
                        prepared.id,
                        prepared.email,
                        format_timestamp(prepared.date_added),
                        format_timestamp(prepared.redeemed),
                    ),
                )
                conn.commit()
        except sqlite3.IntegrityError as e:
            logger.warning(f"이미 존재하는 사용자: {prepared.email}")
            raise DuplicateUserError(op=op, backend=self.backend_name, cause=e) from e

        logger.info(f"사용자 추가: {prepared.email} (id={prepared.id})")

    def update_user(self, user: User, ctx: Optional[OperationContext] = None) -> None:
        """사용 완료 저장 (UPDATE ... WHERE redeemed IS NULL)"""
        op = "update_user"
        prepared = self._prepare_update(user, op)
        ctx = self._check(ctx, op)

        with self._session(ctx, op) as conn:
            if prepared.redeemed is None:
                self._verify_noop_update(self._select(conn, prepared.email), op)
                return

            ctx.check(op)
            cursor = conn.execute(
                "UPDATE users SET redeemed = ? WHERE email = ? AND redeemed IS NULL",
                (format_timestamp(prepared.redeemed), prepared.email),
            )
            affected = cursor.rowcount
            conn.commit()

            if affected == 0:
                # 레코드 없음 vs 다른 요청이 먼저 사용 처리
                raise self._conditional_write_failed(self._select(conn, prepared.email), op)

        logger.info(f"사용 완료 저장: {prepared.email}")

    def get_report(
        self, params: ReportParams, ctx: Optional[OperationContext] = None
    ) -> List[User]:
        """리포트 조회"""
        op = "get_report"
        ctx = self._check(ctx, op)
        column = "redeemed" if params.kind is ReportKind.REDEEMED else "date_added"

        with self._session(ctx, op) as conn:
            cursor = conn.execute(
                f"""
                SELECT {_COLUMNS} FROM users
                WHERE {column} IS NOT NULL AND {column} >= ? AND {column} < ?
                ORDER BY {column} DESC, email ASC
            """,
                (format_timestamp(params.date_from), format_timestamp(params.date_to)),
            )
            columns = [description[0] for description in cursor.description]
            rows = [dict(zip(columns, row)) for row in cursor.fetchall()]

        results = [User.from_item(row) for row in rows]
        logger.info(f"리포트 조회: {params.kind.value} ({len(results)}건)")
        return results

    def close(self) -> None:
        """DB 커넥션 종료"""
        with self._lock:
            self._closed = True
            if self._connection is not None:
                try:
                    self._connection.close()
                finally:
                    self._connection = None
                logger.info(f"SQLite DB 연결 종료: {self.db_path}")
