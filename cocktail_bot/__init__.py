"""
칵테일 쿠폰 사용자 저장소
"""

__version__ = "1.0.0"
