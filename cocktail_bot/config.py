"""
환경변수 및 설정 관리 모듈
"""

import os
import logging
from dotenv import load_dotenv

logger = logging.getLogger(__name__)

# .env 파일 로드 (로컬 개발 환경용)
load_dotenv()

ENV_PREFIX = "COCKTAILBOT_"


def _env(name: str, default: str = "") -> str:
    """COCKTAILBOT_ 접두사 환경변수 조회"""
    return os.getenv(f"{ENV_PREFIX}{name}", default)


class ConfigClass:
    """애플리케이션 설정 클래스"""

    # 지원하는 저장소 종류
    SUPPORTED_DATABASE_TYPES = ("csv", "sqlite", "postgresql", "dynamodb", "googlesheet")

    # 연결 문자열이 필요한 저장소 (dynamodb는 테이블명 사용)
    CONNECTION_STRING_TYPES = ("csv", "sqlite", "postgresql", "googlesheet")

    # 로그 파일 회전 설정
    LOG_MAX_BYTES = 10 * 1024 * 1024  # 10MB
    LOG_BACKUP_COUNT = 5

    # PostgreSQL 재시도 설정
    DB_RETRY_ATTEMPTS = 3  # 일시 장애 시 최대 시도 횟수

    @property
    def LOG_LEVEL(self):
        """로그 레벨 (debug/info/warning/error)"""
        return _env("LOG_LEVEL", "info").lower()

    @property
    def LOG_DIR(self):
        """로그 파일 디렉토리"""
        return _env("LOG_DIR", "logs")

    @property
    def DATABASE_TYPE(self):
        """저장소 종류"""
        return _env("DATABASE_TYPE", "csv").strip().lower()

    @property
    def DATABASE_CONNECTION_STRING(self):
        """
        저장소 연결 문자열

        - csv/sqlite: 파일 경로
        - postgresql: DSN
        - googlesheet: credentials_file:sheet_id:range
        """
        return _env("DATABASE_CONNECTION_STRING", "./data/users.csv")

    @property
    def DB_TIMEOUT(self):
        """저장소 연산 기본 타임아웃 (초)"""
        raw = _env("DB_TIMEOUT", "5.0")
        try:
            return float(raw)
        except ValueError:
            logger.warning(f"잘못된 DB_TIMEOUT 값: {raw} (기본값 5.0 사용)")
            return 5.0

    @property
    def AWS_REGION(self):
        """AWS 리전"""
        return os.getenv("AWS_REGION", "eu-central-1")

    @property
    def DYNAMODB_USERS_TABLE(self):
        """DynamoDB 사용자 테이블명"""
        return _env("DYNAMODB_USERS_TABLE", "cocktail-users")

    @property
    def DYNAMODB_ENDPOINT_URL(self):
        """로컬 DynamoDB 엔드포인트 (없으면 AWS 기본값)"""
        return _env("DYNAMODB_ENDPOINT_URL") or None

    @property
    def SHEET_LOCK_CELL(self):
        """Google Sheets 세마포어 셀"""
        return _env("SHEET_LOCK_CELL", "Lock!A1")

    def validate(self):
        """필수 환경변수 검증"""
        problems = []

        if self.DATABASE_TYPE not in self.SUPPORTED_DATABASE_TYPES:
            problems.append(
                f"지원하지 않는 DATABASE_TYPE: {self.DATABASE_TYPE} "
                f"(지원: {', '.join(self.SUPPORTED_DATABASE_TYPES)})"
            )
        elif (
            self.DATABASE_TYPE in self.CONNECTION_STRING_TYPES
            and not self.DATABASE_CONNECTION_STRING.strip()
        ):
            problems.append(f"{ENV_PREFIX}DATABASE_CONNECTION_STRING이 설정되지 않았습니다")

        if self.DB_TIMEOUT <= 0:
            problems.append("DB_TIMEOUT은 0보다 커야 합니다")

        if problems:
            raise ValueError(f"설정 오류: {'; '.join(problems)}")

        return True


# 싱글톤 인스턴스 생성
Config = ConfigClass()
