"""
사용자 모듈
"""
from .models import User, normalize_email, validate_email

__all__ = ["User", "normalize_email", "validate_email"]
