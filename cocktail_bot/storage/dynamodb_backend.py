"""
DynamoDB 스토리지 백엔드 구현 (문서 저장소)
ConditionExpression으로 조건부 쓰기: 먼저 기록한 요청만 성공
"""

import logging
import threading
from typing import List, Optional

import boto3
from boto3.dynamodb.conditions import Attr
from boto3.dynamodb.types import TypeDeserializer
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from ..context import OperationContext
from ..errors import BackendUnavailableError, DuplicateUserError, InternalError
from ..report import ReportKind, ReportParams
from ..timeutil import format_timestamp
from ..users.models import User
from .base import UserRepository

logger = logging.getLogger(__name__)

_deserializer = TypeDeserializer()

# 재시도해도 되는 일시 장애 코드
_TRANSIENT_ERROR_CODES = {
    "ProvisionedThroughputExceededException",
    "ThrottlingException",
    "RequestLimitExceeded",
    "InternalServerError",
    "ServiceUnavailable",
}


class DynamoDBRepository(UserRepository):
    """DynamoDB 스토리지 백엔드 (파티션 키: 정규화된 email)"""

    backend_name = "dynamodb"

    def __init__(
        self,
        table_name: str,
        region_name: str = "eu-central-1",
        endpoint_url: Optional[str] = None,
        timeout: float = 5.0,
    ):
        """
        Args:
            table_name: 사용자 테이블명
            region_name: AWS 리전
            endpoint_url: 로컬 DynamoDB 등 사용자 지정 엔드포인트
            timeout: 연결/읽기 타임아웃 (초)
        """
        self.table_name = table_name
        self.region_name = region_name
        self.endpoint_url = endpoint_url
        self.timeout = timeout
        # boto3 리소스 객체는 스레드 간 공유 불가: 스레드별로 생성
        self._local = threading.local()
        self._init_lock = threading.Lock()

    def _get_dynamodb(self):
        """Lazy loading: 현재 스레드 전용 boto3 DynamoDB 리소스"""
        dynamodb = getattr(self._local, "dynamodb", None)
        if dynamodb is None:
            # 기본 세션 생성은 스레드 안전하지 않음
            with self._init_lock:
                dynamodb = boto3.resource(
                    "dynamodb",
                    region_name=self.region_name,
                    endpoint_url=self.endpoint_url,
                    config=BotoConfig(
                        connect_timeout=self.timeout,
                        read_timeout=self.timeout,
                        retries={"max_attempts": 3, "mode": "standard"},
                    ),
                )
            self._local.dynamodb = dynamodb
        return dynamodb

    def _get_table(self):
        """Lazy loading: 현재 스레드 전용 테이블 리소스"""
        table = getattr(self._local, "table", None)
        if table is None:
            table = self._get_dynamodb().Table(self.table_name)
            self._local.table = table
        return table

    def _translate(self, e: Exception, op: str):
        if isinstance(e, ClientError):
            code = e.response.get("Error", {}).get("Code", "")
            if code in _TRANSIENT_ERROR_CODES:
                logger.error(f"DynamoDB 일시 장애 ({op}): {e}")
                return BackendUnavailableError(op=op, backend=self.backend_name, cause=e)
            logger.error(f"DynamoDB {op} 실패: {e}")
            return InternalError("database error", op=op, backend=self.backend_name, cause=e)
        # BotoCoreError: 엔드포인트 연결 실패, 타임아웃 등
        logger.error(f"DynamoDB 연결 실패 ({op}): {e}")
        return BackendUnavailableError(op=op, backend=self.backend_name, cause=e)

    @staticmethod
    def _is_condition_failure(e: ClientError) -> bool:
        return e.response.get("Error", {}).get("Code") == "ConditionalCheckFailedException"

    def _get_item(self, email: str, op: str) -> Optional[User]:
        try:
            response = self._get_table().get_item(Key={"email": email}, ConsistentRead=True)
        except (ClientError, BotoCoreError) as e:
            raise self._translate(e, op) from e

        if "Item" in response:
            return User.from_item(response["Item"])
        return None

    def _stored_on_condition_failure(self, e: ClientError, email: str, op: str) -> Optional[User]:
        """ALL_OLD로 반환된 기존 아이템 (없으면 다시 조회)"""
        raw = e.response.get("Item")
        if raw:
            return User.from_item({key: _deserializer.deserialize(value) for key, value in raw.items()})
        return self._get_item(email, op)

    # --- Users ---
    def find_by_email(self, email: str, ctx: Optional[OperationContext] = None) -> User:
        """사용자 조회 (강한 일관성 읽기)"""
        op = "find_by_email"
        key = self._lookup_key(email, op)
        self._check(ctx, op)

        user = self._get_item(key, op)
        if user is None:
            logger.info(f"DynamoDB 아이템 없음: {key}")
            raise self._not_found(op)

        logger.info(f"DynamoDB 아이템 조회 완료: {key}")
        return user

    def add_user(self, user: User, ctx: Optional[OperationContext] = None) -> None:
        """사용자 추가 (attribute_not_exists(email) 조건)"""
        op = "add_user"
        prepared = self._prepare_new_user(user, op)
        self._check(ctx, op)

        try:
            self._get_table().put_item(
                Item=prepared.to_item(),
                ConditionExpression="attribute_not_exists(email)",
            )
        except ClientError as e:
            if self._is_condition_failure(e):
                logger.warning(f"이미 존재하는 사용자: {prepared.email} (중복 방지)")
                raise DuplicateUserError(op=op, backend=self.backend_name, cause=e) from e
            raise self._translate(e, op) from e
        except BotoCoreError as e:
            raise self._translate(e, op) from e

        logger.info(f"DynamoDB에 아이템 저장 완료: {prepared.email}")

    def update_user(self, user: User, ctx: Optional[OperationContext] = None) -> None:
        """사용 완료 저장 (attribute_exists(email) AND attribute_not_exists(redeemed) 조건)"""
        op = "update_user"
        prepared = self._prepare_update(user, op)
        ctx = self._check(ctx, op)

        if prepared.redeemed is None:
            self._verify_noop_update(self._get_item(prepared.email, op), op)
            return

        try:
            self._get_table().update_item(
                Key={"email": prepared.email},
                UpdateExpression="SET #redeemed = :redeemed",
                ConditionExpression="attribute_exists(email) AND attribute_not_exists(#redeemed)",
                ExpressionAttributeNames={"#redeemed": "redeemed"},
                ExpressionAttributeValues={":redeemed": format_timestamp(prepared.redeemed)},
                ReturnValuesOnConditionCheckFailure="ALL_OLD",
            )
        except ClientError as e:
            if not self._is_condition_failure(e):
                raise self._translate(e, op) from e
            # 레코드 없음 vs 다른 요청이 먼저 사용 처리 vs 재시도 전 자신의 쓰기가 이미 반영됨
            stored = self._stored_on_condition_failure(e, prepared.email, op)
            if stored is None or stored.redeemed != prepared.redeemed:
                raise self._conditional_write_failed(stored, op) from e
            logger.warning(f"재시도 전 요청이 이미 반영됨: {prepared.email}")
        except BotoCoreError as e:
            raise self._translate(e, op) from e

        logger.info(f"DynamoDB 아이템 업데이트 완료: {prepared.email}")

    def get_report(
        self, params: ReportParams, ctx: Optional[OperationContext] = None
    ) -> List[User]:
        """리포트 조회 (scan + FilterExpression, 페이지네이션)"""
        op = "get_report"
        ctx = self._check(ctx, op)
        attribute = "redeemed" if params.kind is ReportKind.REDEEMED else "date_added"
        filter_expression = Attr(attribute).gte(format_timestamp(params.date_from)) & Attr(
            attribute
        ).lt(format_timestamp(params.date_to))

        try:
            table = self._get_table()
            response = table.scan(FilterExpression=filter_expression)
            items = response.get("Items", [])

            # 페이지네이션 처리
            while "LastEvaluatedKey" in response:
                ctx.check(op)
                response = table.scan(
                    FilterExpression=filter_expression,
                    ExclusiveStartKey=response["LastEvaluatedKey"],
                )
                items.extend(response.get("Items", []))
        except (ClientError, BotoCoreError) as e:
            raise self._translate(e, op) from e

        results = self._filter_report(params, [User.from_item(item) for item in items])
        logger.info(f"DynamoDB 리포트 조회 완료: {params.kind.value} ({len(results)}건)")
        return results

    def close(self) -> None:
        """리소스 참조 해제 (boto3 리소스는 명시적 종료 없음)"""
        self._local = threading.local()
