"""
DynamoDB Backend Tests
boto3 is replaced with MagicMock; ClientError codes drive the error mapping
"""
import pytest
import threading
from datetime import datetime, timezone, timedelta
from unittest.mock import MagicMock, patch

from botocore.exceptions import ClientError, EndpointConnectionError

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from cocktail_bot.errors import (
    AlreadyRedeemedError,
    BackendUnavailableError,
    DuplicateUserError,
    InternalError,
    UserNotFoundError,
)
from cocktail_bot.report import ReportKind, ReportParams
from cocktail_bot.storage.dynamodb_backend import DynamoDBRepository
from cocktail_bot.users.models import User

T0 = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


def client_error(code, operation="PutItem"):
    return ClientError({"Error": {"Code": code, "Message": code}}, operation)


def item(email, added=T0, redeemed=None):
    user = User(id=email, email=email, date_added=added, redeemed=redeemed)
    return user.to_item()


class TestDynamoDBRepository:
    """Test DynamoDBRepository against a mocked table"""

    def setup_method(self):
        self.patcher = patch("cocktail_bot.storage.dynamodb_backend.boto3")
        self.mock_boto3 = self.patcher.start()
        self.table = MagicMock()
        self.mock_boto3.resource.return_value.Table.return_value = self.table
        self.repo = DynamoDBRepository("cocktail-users", region_name="eu-central-1")

    def teardown_method(self):
        self.patcher.stop()

    def test_lazy_resource_creation(self):
        """boto3 is only touched on first use"""
        self.mock_boto3.resource.assert_not_called()

        self.table.get_item.return_value = {"Item": item("a@example.com")}
        self.repo.find_by_email("a@example.com")

        self.mock_boto3.resource.assert_called_once()
        assert self.mock_boto3.resource.call_args[0][0] == "dynamodb"

    def test_find_by_email_normalizes_key(self):
        """Lookup uses the normalized email and a consistent read"""
        self.table.get_item.return_value = {"Item": item("a@example.com")}

        user = self.repo.find_by_email(" A@Example.com ")

        assert user.email == "a@example.com"
        self.table.get_item.assert_called_once_with(
            Key={"email": "a@example.com"}, ConsistentRead=True
        )

    def test_find_missing(self):
        """Missing item raises UserNotFoundError"""
        self.table.get_item.return_value = {}

        with pytest.raises(UserNotFoundError):
            self.repo.find_by_email("a@example.com")

    def test_add_user_uses_condition(self):
        """Insert is conditional on the email being absent"""
        self.repo.add_user(User.create_new("a@example.com", now=T0))

        kwargs = self.table.put_item.call_args[1]
        assert kwargs["ConditionExpression"] == "attribute_not_exists(email)"
        assert kwargs["Item"]["email"] == "a@example.com"
        assert "redeemed" not in kwargs["Item"]

    def test_add_duplicate(self):
        """Failed condition on insert is a conflict"""
        self.table.put_item.side_effect = client_error("ConditionalCheckFailedException")

        with pytest.raises(DuplicateUserError):
            self.repo.add_user(User.create_new("a@example.com", now=T0))

    def test_update_user_conditional_write(self):
        """Redemption is conditional on the stored record being unredeemed"""
        user = User.create_new("a@example.com", now=T0)
        user.redeem(T0 + timedelta(hours=1))

        self.repo.update_user(user)

        kwargs = self.table.update_item.call_args[1]
        assert kwargs["Key"] == {"email": "a@example.com"}
        assert "attribute_not_exists(#redeemed)" in kwargs["ConditionExpression"]
        assert kwargs["ExpressionAttributeValues"][":redeemed"] == "2024-06-01T13:00:00.000000Z"

    def test_update_lost_race(self):
        """Condition failure on a redeemed record is AlreadyRedeemed"""
        self.table.update_item.side_effect = client_error("ConditionalCheckFailedException", "UpdateItem")
        self.table.get_item.return_value = {"Item": item("a@example.com", redeemed=T0)}
        user = User.create_new("a@example.com", now=T0)
        user.redeem(T0 + timedelta(hours=1))

        with pytest.raises(AlreadyRedeemedError):
            self.repo.update_user(user)

    def test_update_missing_record(self):
        """Condition failure on an absent record is NotFound"""
        self.table.update_item.side_effect = client_error("ConditionalCheckFailedException", "UpdateItem")
        self.table.get_item.return_value = {}
        user = User.create_new("a@example.com", now=T0)
        user.redeem(T0)

        with pytest.raises(UserNotFoundError):
            self.repo.update_user(user)

    def test_update_retry_of_committed_write_succeeds(self):
        """A condition failure caused by this caller's own earlier attempt is success"""
        redeemed_at = T0 + timedelta(hours=1)
        self.table.update_item.side_effect = client_error("ConditionalCheckFailedException", "UpdateItem")
        self.table.get_item.return_value = {"Item": item("a@example.com", redeemed=redeemed_at)}
        user = User.create_new("a@example.com", now=T0)
        user.redeem(redeemed_at)

        self.repo.update_user(user)

        assert self.table.update_item.call_args[1]["ReturnValuesOnConditionCheckFailure"] == "ALL_OLD"

    def test_update_uses_old_item_from_condition_failure(self):
        """The ALL_OLD item decides the outcome without a second read"""
        redeemed_at = T0 + timedelta(hours=1)
        error = client_error("ConditionalCheckFailedException", "UpdateItem")
        error.response["Item"] = {
            "id": {"S": "a@example.com"},
            "email": {"S": "a@example.com"},
            "date_added": {"S": "2024-06-01T12:00:00.000000Z"},
            "redeemed": {"S": "2024-06-01T13:00:00.000000Z"},
        }
        self.table.update_item.side_effect = error
        user = User.create_new("a@example.com", now=T0)
        user.redeem(redeemed_at)

        self.repo.update_user(user)

        self.table.get_item.assert_not_called()

    def test_update_old_item_from_other_caller_is_already_redeemed(self):
        """A different stored timestamp in the ALL_OLD item means another caller won"""
        error = client_error("ConditionalCheckFailedException", "UpdateItem")
        error.response["Item"] = {
            "id": {"S": "a@example.com"},
            "email": {"S": "a@example.com"},
            "date_added": {"S": "2024-06-01T12:00:00.000000Z"},
            "redeemed": {"S": "2024-06-01T12:30:00.000000Z"},
        }
        self.table.update_item.side_effect = error
        user = User.create_new("a@example.com", now=T0)
        user.redeem(T0 + timedelta(hours=1))

        with pytest.raises(AlreadyRedeemedError):
            self.repo.update_user(user)

    def test_update_without_redeemed_does_not_write(self):
        """No-op update only reads"""
        self.table.get_item.return_value = {"Item": item("a@example.com")}

        self.repo.update_user(User.create_new("a@example.com", now=T0))

        self.table.update_item.assert_not_called()

    def test_throttling_is_unavailable(self):
        """Throughput errors map to BackendUnavailableError"""
        self.table.get_item.side_effect = client_error("ProvisionedThroughputExceededException", "GetItem")

        with pytest.raises(BackendUnavailableError) as exc_info:
            self.repo.find_by_email("a@example.com")

        assert exc_info.value.is_retryable is True
        assert exc_info.value.backend == "dynamodb"

    def test_connection_failure_is_unavailable(self):
        """Transport failures map to BackendUnavailableError"""
        self.table.get_item.side_effect = EndpointConnectionError(endpoint_url="http://localhost:8000")

        with pytest.raises(BackendUnavailableError):
            self.repo.find_by_email("a@example.com")

    def test_other_client_error_is_internal(self):
        """Unexpected client errors map to InternalError"""
        self.table.get_item.side_effect = client_error("ResourceNotFoundException", "GetItem")

        with pytest.raises(InternalError):
            self.repo.find_by_email("a@example.com")

    def test_report_paginates_and_sorts(self):
        """All scan pages are read and the result is ordered"""
        self.table.scan.side_effect = [
            {"Items": [item("b@example.com", added=T0)], "LastEvaluatedKey": {"email": "b@example.com"}},
            {"Items": [item("a@example.com", added=T0), item("c@example.com", added=T0 + timedelta(hours=1))]},
        ]
        params = ReportParams(ReportKind.ADDED, T0, T0 + timedelta(days=1))

        users = self.repo.get_report(params)

        assert [u.email for u in users] == ["c@example.com", "a@example.com", "b@example.com"]
        assert self.table.scan.call_count == 2
        assert self.table.scan.call_args[1]["ExclusiveStartKey"] == {"email": "b@example.com"}

    def test_close(self):
        """close() drops resource references and is idempotent"""
        self.table.get_item.return_value = {"Item": item("a@example.com")}
        self.repo.find_by_email("a@example.com")

        self.repo.close()
        self.repo.close()

        assert getattr(self.repo._local, "table", None) is None

        self.repo.find_by_email("a@example.com")
        assert self.mock_boto3.resource.call_count == 2

    def test_each_thread_gets_own_resource(self):
        """Resource and Table objects are created per thread and never shared"""
        self.mock_boto3.resource.side_effect = lambda *args, **kwargs: MagicMock()
        tables = []
        lock = threading.Lock()

        def use():
            table = self.repo._get_table()
            assert self.repo._get_table() is table
            with lock:
                tables.append(table)

        threads = [threading.Thread(target=use) for _ in range(2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert self.mock_boto3.resource.call_count == 2
        assert tables[0] is not tables[1]
