"""
구조화 로깅 유틸리티
로그 수집기에서 검색/필터링이 용이한 JSON 형식 로깅 지원
"""
import json
import logging
import os
from logging.handlers import RotatingFileHandler
from typing import Any, Dict, Optional
from datetime import datetime, timezone

from .config import Config


class StructuredLogger:
    """구조화된 JSON 로깅을 위한 래퍼 클래스"""

    def __init__(self, logger: logging.Logger):
        """
        Args:
            logger: 기존 logger 인스턴스
        """
        self.logger = logger

    def log_event(
        self,
        level: str,
        event: str,
        message: str,
        extra: Dict[str, Any] = None,
        **kwargs
    ):
        """
        구조화된 로그 이벤트 기록

        Args:
            level: 로그 레벨 (INFO, WARNING, ERROR 등)
            event: 이벤트 타입 (user_lookup, cocktail_redeemed 등)
            message: 사람이 읽기 쉬운 메시지
            extra: 추가 메타데이터 딕셔너리
            **kwargs: 추가 키워드 인자
        """
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": level.upper(),
            "event": event,
            "message": message,
        }

        if extra:
            log_data.update(extra)

        if kwargs:
            log_data.update(kwargs)

        log_message = json.dumps(log_data, ensure_ascii=False, default=str)

        log_level = getattr(logging, level.upper(), logging.INFO)
        self.logger.log(log_level, log_message)

    def info(self, event: str, message: str, **kwargs):
        """INFO 레벨 로그"""
        self.log_event("INFO", event, message, **kwargs)

    def warning(self, event: str, message: str, **kwargs):
        """WARNING 레벨 로그"""
        self.log_event("WARNING", event, message, **kwargs)

    def error(self, event: str, message: str, **kwargs):
        """ERROR 레벨 로그"""
        self.log_event("ERROR", event, message, **kwargs)

    def debug(self, event: str, message: str, **kwargs):
        """DEBUG 레벨 로그"""
        self.log_event("DEBUG", event, message, **kwargs)


def get_structured_logger(name: str) -> StructuredLogger:
    """
    구조화 로거 생성

    Args:
        name: 로거 이름 (일반적으로 __name__ 사용)

    Returns:
        StructuredLogger 인스턴스

    Example:
        >>> logger = get_structured_logger(__name__)
        >>> logger.info(
        ...     event="cocktail_redeemed",
        ...     message="칵테일 쿠폰 사용 완료",
        ...     email="user@example.com",
        ... )
    """
    return StructuredLogger(logging.getLogger(name))


def setup_logging(level: Optional[str] = None, log_dir: Optional[str] = None):
    """
    로깅 설정: 콘솔 + RotatingFileHandler (logs/cocktail_bot.log)

    Args:
        level: 로그 레벨 (없으면 Config.LOG_LEVEL)
        log_dir: 로그 디렉토리 (없으면 Config.LOG_DIR)
    """
    level_name = (level or Config.LOG_LEVEL).upper()

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level_name, logging.INFO))

    # 기존 핸들러 제거 (중복 방지)
    root_logger.handlers.clear()

    formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    console = logging.StreamHandler()
    console.setFormatter(formatter)
    root_logger.addHandler(console)

    log_dir = log_dir or Config.LOG_DIR
    os.makedirs(log_dir, exist_ok=True)
    file_handler = RotatingFileHandler(
        os.path.join(log_dir, "cocktail_bot.log"),
        maxBytes=Config.LOG_MAX_BYTES,
        backupCount=Config.LOG_BACKUP_COUNT,
        encoding="utf-8",
    )
    file_handler.setFormatter(formatter)
    root_logger.addHandler(file_handler)


# 특정 이벤트 타입별 로깅 헬퍼
def log_lookup(logger: StructuredLogger, email: str, status: str, backend: str = ""):
    """사용자 조회 로그"""
    logger.info(
        event="user_lookup",
        message=f"사용자 조회: {email} ({status})",
        email=email,
        status=status,
        backend=backend,
    )


def log_redemption(
    logger: StructuredLogger,
    email: str,
    success: bool,
    redeemed_at: Optional[datetime] = None,
    error: str = None,
):
    """쿠폰 사용 로그"""
    if success:
        logger.info(
            event="cocktail_redeemed",
            message=f"칵테일 쿠폰 사용 완료: {email}",
            email=email,
            redeemed_at=redeemed_at.isoformat() if redeemed_at else None,
            success=True,
        )
    else:
        logger.warning(
            event="cocktail_redeem_failed",
            message=f"칵테일 쿠폰 사용 실패: {email}",
            email=email,
            success=False,
            error=error,
        )


def log_import_finished(logger: StructuredLogger, source: str, counts: Dict[str, int]):
    """이메일 일괄 등록 로그"""
    logger.info(
        event="import_finished",
        message=f"이메일 일괄 등록 완료: {source}",
        source=source,
        **counts,
    )
