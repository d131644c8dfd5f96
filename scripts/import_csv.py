#!/usr/bin/env python3
"""
CSV 파일의 이메일을 사용자 저장소에 일괄 등록

사용법:
  python scripts/import_csv.py emails.csv                  # 1열, 헤더 있음
  python scripts/import_csv.py emails.csv --column 2       # 2열 사용
  python scripts/import_csv.py emails.csv --no-header      # 헤더 없음
"""
import sys
import os
import argparse

# 프로젝트 루트를 PYTHONPATH에 추가
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))


def main():
    parser = argparse.ArgumentParser(description='CSV 이메일 일괄 등록')
    parser.add_argument('file', help='CSV 파일 경로')
    parser.add_argument('--column', type=int, default=1,
                        help='이메일 열 번호 (1부터 시작, 기본값 1)')
    parser.add_argument('--no-header', action='store_true',
                        help='첫 행이 헤더가 아닌 경우')
    parser.add_argument('--db-type', default=None,
                        help='저장소 종류 (기본값: COCKTAILBOT_DATABASE_TYPE)')
    parser.add_argument('--connection-string', default=None,
                        help='저장소 연결 문자열 (기본값: COCKTAILBOT_DATABASE_CONNECTION_STRING)')
    args = parser.parse_args()

    # 로깅 설정 (파일 + 콘솔)
    from cocktail_bot.structured_logging import setup_logging
    setup_logging()

    import logging
    logger = logging.getLogger(__name__)

    from cocktail_bot.config import Config
    from cocktail_bot.errors import RepositoryError
    from cocktail_bot.importer import import_emails, read_emails_from_csv
    from cocktail_bot.storage.factory import create_repository, repository_options

    try:
        emails = read_emails_from_csv(args.file, column=args.column, has_header=not args.no_header)
    except (OSError, ValueError) as e:
        logger.error(f"CSV 읽기 실패: {e}")
        sys.exit(1)

    db_type = args.db_type or Config.DATABASE_TYPE
    connection_string = args.connection_string or (
        Config.DYNAMODB_USERS_TABLE if db_type == "dynamodb" else Config.DATABASE_CONNECTION_STRING
    )

    try:
        repository = create_repository(db_type, connection_string, **repository_options(db_type))
        with repository:
            result = import_emails(repository, emails, source=args.file)
    except RepositoryError as e:
        logger.error(f"일괄 등록 실패: {e}")
        sys.exit(1)

    print(f"\n결과:")
    print(f"  ✓ 추가: {result.added}명")
    print(f"  - 이미 존재: {result.existing}명")
    print(f"  - 목록 내 중복: {result.duplicates}명")
    print(f"  ✗ 형식 오류: {result.invalid}명")

    if result.invalid_emails:
        print(f"  형식 오류 이메일: {', '.join(result.invalid_emails)}")


if __name__ == "__main__":
    main()
