#!/usr/bin/env python3
"""
칵테일 쿠폰 사용자 관리 CLI 도구

사용법:
  python scripts/manage_users.py find <email>                    # 사용자 상태 조회
  python scripts/manage_users.py add <email>                     # 사용자 추가
  python scripts/manage_users.py redeem <email>                  # 쿠폰 사용 처리
  python scripts/manage_users.py report <all|added|redeemed> <from> <to>
                                                                 # 리포트 (YYYY-MM-DD, to 미포함)
"""
import os
import sys

# 프로젝트 루트를 Python 경로에 추가
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from cocktail_bot.config import Config
from cocktail_bot.context import OperationContext
from cocktail_bot.errors import RepositoryError
from cocktail_bot.report import generate_report, summarize
from cocktail_bot.storage import get_repository
from cocktail_bot.structured_logging import setup_logging
from cocktail_bot.users.models import User
from cocktail_bot.users.redemption_service import EmailStatus, RedemptionService


def print_user(user):
    """사용자 정보 출력"""
    redeemed = user.redeemed.isoformat() if user.redeemed else "미사용"
    print(f"  - {user.email:30s} | 등록: {user.date_added.isoformat()} | 사용: {redeemed}")


def cmd_find(service, email):
    """사용자 상태 조회"""
    status, user = service.check_email_status(email, OperationContext(Config.DB_TIMEOUT))
    messages = {
        EmailStatus.ELIGIBLE: "✓ 사용 가능",
        EmailStatus.REDEEMED: "✗ 이미 사용됨",
        EmailStatus.NOT_FOUND: "✗ 등록되지 않은 이메일",
        EmailStatus.INVALID: "✗ 잘못된 이메일 형식",
    }
    print(f"{email}: {messages[status]}")
    if user:
        print_user(user)


def cmd_add(service, email):
    """사용자 추가"""
    print(f"사용자 추가 중: {email}")
    service.repository.add_user(User.create_new(email), OperationContext(Config.DB_TIMEOUT))
    print("✓ 추가 완료")


def cmd_redeem(service, email):
    """쿠폰 사용 처리"""
    print(f"쿠폰 사용 처리 중: {email}")
    redeemed_at = service.redeem(email, OperationContext(Config.DB_TIMEOUT))
    print(f"✓ 사용 완료 ({redeemed_at.isoformat()})")


def cmd_report(service, kind, date_from, date_to):
    """리포트 출력"""
    users = generate_report(
        service.repository, kind, date_from, date_to, OperationContext(Config.DB_TIMEOUT)
    )
    counts = summarize(users)
    print(f"\n{kind} 리포트 ({date_from} ~ {date_to}): {counts['total']}명")
    print(f"  사용: {counts['redeemed']}명 / 미사용: {counts['eligible']}명")
    print("=" * 80)
    for user in users:
        print_user(user)


def main():
    if len(sys.argv) < 3:
        print(__doc__)
        sys.exit(1)

    setup_logging()
    command = sys.argv[1]

    try:
        Config.validate()
    except ValueError as e:
        print(f"설정 오류: {e}")
        sys.exit(1)

    service = RedemptionService(get_repository())

    try:
        if command == "find":
            cmd_find(service, sys.argv[2])

        elif command == "add":
            cmd_add(service, sys.argv[2])

        elif command == "redeem":
            cmd_redeem(service, sys.argv[2])

        elif command == "report":
            if len(sys.argv) < 5:
                print("사용법: python scripts/manage_users.py report <all|added|redeemed> <from> <to>")
                sys.exit(1)
            cmd_report(service, sys.argv[2], sys.argv[3], sys.argv[4])

        else:
            print(f"알 수 없는 명령어: {command}")
            print(__doc__)
            sys.exit(1)

    except RepositoryError as e:
        print(f"✗ 실패: {e}")
        sys.exit(1)
    finally:
        service.close()


if __name__ == "__main__":
    main()
