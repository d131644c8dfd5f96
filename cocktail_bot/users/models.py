"""
사용자(쿠폰 사용 기록) 데이터 모델
"""
import re
import uuid
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Optional

from ..errors import AlreadyRedeemedError, ValidationError
from ..timeutil import format_timestamp, parse_timestamp, to_utc, utc_now

_EMAIL_PATTERN = re.compile(r"^[^@\s]+@([^@\s.]+\.)+[a-zA-Z]{2,}$")


def normalize_email(email: Optional[str]) -> str:
    """공백 제거 + 소문자 변환 (유일한 식별 키)"""
    if email is None:
        return ""
    return email.strip().lower()


def validate_email(email: str) -> bool:
    """
    이메일 주소 유효성 검증

    Args:
        email: 검증할 이메일 주소

    Returns:
        유효한 이메일이면 True
    """
    if not email:
        return False
    return _EMAIL_PATTERN.match(email.strip()) is not None


@dataclass
class User:
    """쿠폰 사용 기록"""

    id: Optional[str]
    email: str
    date_added: Optional[datetime] = None
    redeemed: Optional[datetime] = None

    def __post_init__(self):
        self.email = normalize_email(self.email)
        if self.date_added is not None:
            self.date_added = to_utc(self.date_added)
        if self.redeemed is not None:
            self.redeemed = to_utc(self.redeemed)

    @classmethod
    def create_new(
        cls, email: str, id: Optional[str] = None, now: Optional[datetime] = None
    ) -> "User":
        """
        새 사용자 생성 (사용 가능 상태)

        Args:
            email: 이메일 주소
            id: 식별자 (없으면 자동 생성)
            now: 등록 시각 (없으면 현재 시각)

        Returns:
            새 User 객체

        Raises:
            ValidationError: 이메일 형식이 올바르지 않은 경우
        """
        normalized = normalize_email(email)
        if not validate_email(normalized):
            raise ValidationError("email", "invalid email format", value=email)

        return cls(
            id=id or uuid.uuid4().hex,
            email=normalized,
            date_added=now or utc_now(),
        )

    @classmethod
    def from_item(cls, item: dict) -> "User":
        """
        저장소 아이템(dict)을 User 객체로 변환

        Args:
            item: id, email, date_added, redeemed 키를 가진 dict

        Returns:
            User 객체
        """
        date_added = item["date_added"]
        if not isinstance(date_added, datetime):
            date_added = parse_timestamp(date_added)

        redeemed = item.get("redeemed")
        if redeemed is not None and not isinstance(redeemed, datetime):
            redeemed = parse_timestamp(redeemed)

        return cls(
            id=str(item["id"]),
            email=item["email"],
            date_added=date_added,
            redeemed=redeemed,
        )

    def to_item(self) -> dict:
        """
        User 객체를 저장소 아이템으로 변환 (redeemed가 없으면 키 생략)

        Returns:
            dict 아이템
        """
        item = {
            "id": self.id,
            "email": self.email,
            "date_added": format_timestamp(self.date_added),
        }

        if self.redeemed is not None:
            item["redeemed"] = format_timestamp(self.redeemed)

        return item

    def is_redeemed(self) -> bool:
        """사용 완료 여부"""
        return self.redeemed is not None

    def redeem(self, now: Optional[datetime] = None) -> datetime:
        """
        메모리 사본을 사용 완료로 표시 (저장은 update_user 호출 시)

        Raises:
            AlreadyRedeemedError: 이미 사용 완료된 사본인 경우
        """
        if self.redeemed is not None:
            raise AlreadyRedeemedError(op="redeem")
        self.redeemed = to_utc(now) if now is not None else utc_now()
        return self.redeemed

    def copy(self) -> "User":
        """분리된 사본 (datetime은 불변이므로 얕은 복사로 충분)"""
        return replace(self)
