"""
연산 컨텍스트 (취소 / 타임아웃 토큰)
모든 저장소 연산에 전달되어 I/O 전에 확인된다
"""

import threading
import time
from typing import Optional

from .errors import OperationCancelledError


class OperationContext:
    """취소 신호와 마감 시각을 담는 토큰"""

    def __init__(self, timeout: Optional[float] = None):
        """
        Args:
            timeout: 초 단위 제한 시간 (None이면 무제한)
        """
        self._event = threading.Event()
        self._deadline = time.monotonic() + timeout if timeout is not None else None

    @classmethod
    def background(cls) -> "OperationContext":
        """만료되지 않는 기본 컨텍스트"""
        return cls()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def expired(self) -> bool:
        return self._deadline is not None and time.monotonic() >= self._deadline

    def remaining(self) -> Optional[float]:
        """남은 시간 (초). 마감이 없으면 None"""
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - time.monotonic())

    def bounded(self, default: float) -> float:
        """
        I/O 타임아웃 값 계산

        Args:
            default: 드라이버 기본 타임아웃 (초)

        Returns:
            default와 남은 시간 중 작은 값
        """
        remaining = self.remaining()
        if remaining is None:
            return default
        return min(default, remaining)

    def check(self, op: str = "") -> None:
        """
        취소 또는 마감 초과 시 예외 발생

        Raises:
            OperationCancelledError: 취소되었거나 시간이 초과된 경우
        """
        if self.cancelled:
            raise OperationCancelledError("operation cancelled", op=op)
        if self.expired:
            raise OperationCancelledError("operation deadline exceeded", op=op)


def ensure_context(ctx: Optional[OperationContext]) -> OperationContext:
    return ctx if ctx is not None else OperationContext.background()
