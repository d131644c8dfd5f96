"""
타임스탬프 유틸리티
모든 시각은 UTC aware datetime으로 다루고, 저장 시에는 고정 폭 ISO 문자열을 사용
"""

from datetime import datetime, timezone
from typing import Optional

# 고정 폭 포맷: 문자열 정렬 순서 == 시간 순서 (DynamoDB 필터, CSV, 시트)
TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"

# 레거시 데이터 호환용 포맷 (시트/CSV 수기 입력)
_LEGACY_FORMATS = [
    "%Y-%m-%dT%H:%M:%SZ",
    "%Y-%m-%d %H:%M:%S",
    "%m/%d/%Y %H:%M:%S",
    "%m/%d/%Y",
    "%Y-%m-%d",
]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_utc(value: datetime) -> datetime:
    """naive datetime은 UTC로 간주"""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return to_utc(value).strftime(TIMESTAMP_FORMAT)


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """
    여러 형식의 시각 문자열 파싱

    Args:
        value: 시각 문자열 (빈 문자열/None이면 None 반환)

    Returns:
        UTC datetime 또는 None

    Raises:
        ValueError: 알 수 없는 형식인 경우
    """
    if value is None:
        return None
    text = str(value).strip()
    if not text:
        return None

    try:
        return to_utc(datetime.strptime(text, TIMESTAMP_FORMAT))
    except ValueError:
        pass

    # RFC3339 (오프셋 포함)
    iso_text = text[:-1] + "+00:00" if text.endswith("Z") else text
    try:
        return to_utc(datetime.fromisoformat(iso_text))
    except ValueError:
        pass

    for fmt in _LEGACY_FORMATS:
        try:
            return to_utc(datetime.strptime(text, fmt))
        except ValueError:
            continue

    raise ValueError(f"알 수 없는 시각 형식: {text}")
