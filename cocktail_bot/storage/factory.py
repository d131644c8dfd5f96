"""
스토리지 백엔드 팩토리
설정된 저장소 종류에 맞는 백엔드를 생성하여 반환 (프로세스당 한 번 선택)
"""

import logging
import threading
from typing import Optional

from ..config import Config
from ..errors import ValidationError
from .base import UserRepository

logger = logging.getLogger(__name__)

_repository_instance: Optional[UserRepository] = None
_repository_lock = threading.Lock()


def create_repository(db_type: str, connection_string: str = "", **options) -> UserRepository:
    """
    저장소 종류와 연결 문자열로 백엔드 생성

    Args:
        db_type: csv, sqlite, postgresql, dynamodb, googlesheet
        connection_string: 파일 경로 / DSN / 시트 연결 문자열 (dynamodb는 테이블명)
        **options: 백엔드별 추가 옵션 (timeout, region_name 등)

    Returns:
        UserRepository 구현체

    Raises:
        ValidationError: 지원하지 않는 저장소 종류이거나 연결 문자열이 없는 경우
    """
    db_type = (db_type or "").strip().lower()

    if db_type == "csv":
        from .csv_backend import CSVRepository

        backend = CSVRepository(_require(db_type, connection_string), **options)
    elif db_type == "sqlite":
        from .sqlite_backend import SQLiteRepository

        backend = SQLiteRepository(_require(db_type, connection_string), **options)
    elif db_type == "postgresql":
        from .postgresql_backend import PostgreSQLRepository

        backend = PostgreSQLRepository(_require(db_type, connection_string), **options)
    elif db_type == "dynamodb":
        from .dynamodb_backend import DynamoDBRepository

        backend = DynamoDBRepository(connection_string or Config.DYNAMODB_USERS_TABLE, **options)
    elif db_type == "googlesheet":
        from .googlesheet_backend import GoogleSheetRepository

        backend = GoogleSheetRepository.from_connection_string(
            _require(db_type, connection_string), **options
        )
    else:
        raise ValidationError(
            "database_type",
            f"unsupported database type (supported: {', '.join(Config.SUPPORTED_DATABASE_TYPES)})",
            value=db_type,
        )

    logger.info(f"저장소 백엔드 생성: {db_type}")
    return backend


def _require(db_type: str, connection_string: str) -> str:
    if not connection_string or not connection_string.strip():
        raise ValidationError(
            "connection_string", f"connection string is required for {db_type}"
        )
    return connection_string.strip()


def repository_options(db_type: str) -> dict:
    """Config에서 백엔드별 생성 옵션 구성"""
    options = {"timeout": Config.DB_TIMEOUT}
    if db_type == "dynamodb":
        options["region_name"] = Config.AWS_REGION
        options["endpoint_url"] = Config.DYNAMODB_ENDPOINT_URL
    elif db_type == "googlesheet":
        options["lock_cell"] = Config.SHEET_LOCK_CELL
    elif db_type == "postgresql":
        options["retry_attempts"] = Config.DB_RETRY_ATTEMPTS
    return options


def get_repository() -> UserRepository:
    """설정(Config)에 따른 저장소 백엔드 반환 (싱글톤)"""
    global _repository_instance
    with _repository_lock:
        if _repository_instance is not None:
            return _repository_instance

        db_type = Config.DATABASE_TYPE
        connection_string = Config.DATABASE_CONNECTION_STRING
        if db_type == "dynamodb":
            connection_string = Config.DYNAMODB_USERS_TABLE

        _repository_instance = create_repository(
            db_type, connection_string, **repository_options(db_type)
        )
        return _repository_instance


def reset_repository() -> None:
    """싱글톤 저장소 종료 및 초기화 (테스트/재설정용)"""
    global _repository_instance
    with _repository_lock:
        if _repository_instance is not None:
            _repository_instance.close()
        _repository_instance = None
