"""
Error Taxonomy and Operation Context Tests
"""
import pytest
import time
from datetime import datetime, timezone, timedelta

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from cocktail_bot import errors
from cocktail_bot.context import OperationContext, ensure_context
from cocktail_bot.errors import (
    AlreadyRedeemedError,
    BackendUnavailableError,
    DuplicateUserError,
    ErrorKind,
    InternalError,
    OperationCancelledError,
    UserNotFoundError,
    ValidationError,
)
from cocktail_bot.timeutil import format_timestamp, parse_timestamp


class TestErrorTaxonomy:
    """Test error kinds, messages and predicates"""

    def test_default_messages(self):
        """Each kind has a stable user-facing message"""
        assert UserNotFoundError().message == "user email not found in database"
        assert BackendUnavailableError().message == "database is temporarily unavailable, try later"
        assert AlreadyRedeemedError().message == "cocktail already redeemed"
        assert InternalError().message == "internal server error"

    def test_str_includes_backend_op_and_cause(self):
        """Backend name, operation and cause are rendered"""
        cause = OSError("disk gone")
        err = BackendUnavailableError(op="find_by_email", backend="csv", cause=cause)

        text = str(err)

        assert text.startswith("database is temporarily unavailable, try later: disk gone")
        assert "db: csv" in text
        assert "op: find_by_email" in text

    def test_validation_error_format(self):
        """ValidationError names the field and the offending value"""
        err = ValidationError("kind", "unknown report kind", value="weekly")

        assert str(err) == "validation failed for kind: unknown report kind (value: weekly)"
        assert err.kind is ErrorKind.VALIDATION

    @pytest.mark.parametrize("err,predicate", [
        (UserNotFoundError(), errors.is_not_found),
        (DuplicateUserError(), errors.is_conflict),
        (AlreadyRedeemedError(), errors.is_already_redeemed),
        (BackendUnavailableError(), errors.is_unavailable),
        (ValidationError("email", "bad"), errors.is_validation_error),
        (OperationCancelledError(), errors.is_cancelled),
    ])
    def test_predicates_match_only_their_kind(self, err, predicate):
        """Each predicate recognizes exactly one kind"""
        all_predicates = [
            errors.is_not_found,
            errors.is_conflict,
            errors.is_already_redeemed,
            errors.is_unavailable,
            errors.is_validation_error,
            errors.is_cancelled,
        ]

        assert predicate(err) is True
        for other in all_predicates:
            if other is not predicate:
                assert other(err) is False

    def test_predicates_ignore_foreign_exceptions(self):
        """Non-repository exceptions are never classified"""
        assert errors.is_not_found(KeyError("x")) is False
        assert errors.is_unavailable(TimeoutError()) is False

    def test_only_unavailable_is_retryable(self):
        """Transient failures are the only retryable kind"""
        assert BackendUnavailableError().is_retryable is True
        assert AlreadyRedeemedError().is_retryable is False
        assert InternalError().is_retryable is False


class TestOperationContext:
    """Test cancellation and deadline handling"""

    def test_background_never_expires(self):
        """Background context has no deadline"""
        ctx = OperationContext.background()

        ctx.check("op")
        assert ctx.remaining() is None
        assert ctx.bounded(5.0) == 5.0

    def test_cancel(self):
        """Cancelled contexts raise on check"""
        ctx = OperationContext()
        ctx.cancel()

        with pytest.raises(OperationCancelledError) as exc_info:
            ctx.check("add_user")

        assert exc_info.value.op == "add_user"
        assert errors.is_cancelled(exc_info.value)

    def test_deadline_exceeded(self):
        """Expired deadlines raise on check"""
        ctx = OperationContext(timeout=0.01)
        time.sleep(0.05)

        assert ctx.expired is True
        with pytest.raises(OperationCancelledError):
            ctx.check()

    def test_bounded_uses_smaller_value(self):
        """I/O timeouts never exceed the remaining budget"""
        ctx = OperationContext(timeout=1.0)

        assert ctx.bounded(5.0) <= 1.0
        assert ctx.bounded(0.1) == 0.1

    def test_ensure_context(self):
        """None becomes a background context"""
        ctx = OperationContext()

        assert ensure_context(ctx) is ctx
        assert isinstance(ensure_context(None), OperationContext)


class TestTimestamps:
    """Test timestamp formatting and parsing"""

    def test_fixed_width_format_sorts_lexically(self):
        """Stored strings sort in time order"""
        earlier = datetime(2024, 1, 1, 9, 0, 0, 5, tzinfo=timezone.utc)
        later = datetime(2024, 1, 1, 10, 0, tzinfo=timezone.utc)

        assert format_timestamp(earlier) < format_timestamp(later)
        assert format_timestamp(earlier) == "2024-01-01T09:00:00.000005Z"

    @pytest.mark.parametrize("text,expected", [
        ("2024-03-01T10:20:30.000000Z", datetime(2024, 3, 1, 10, 20, 30, tzinfo=timezone.utc)),
        ("2024-03-01T10:20:30Z", datetime(2024, 3, 1, 10, 20, 30, tzinfo=timezone.utc)),
        ("2024-03-01T19:20:30+09:00", datetime(2024, 3, 1, 10, 20, 30, tzinfo=timezone.utc)),
        ("2024-03-01 10:20:30", datetime(2024, 3, 1, 10, 20, 30, tzinfo=timezone.utc)),
        ("2024-03-01", datetime(2024, 3, 1, tzinfo=timezone.utc)),
    ])
    def test_parse_formats(self, text, expected):
        """Legacy and ISO formats are accepted"""
        assert parse_timestamp(text) == expected

    def test_parse_empty(self):
        """Empty cells mean no timestamp"""
        assert parse_timestamp("") is None
        assert parse_timestamp("   ") is None
        assert parse_timestamp(None) is None

    def test_parse_garbage(self):
        """Unknown formats raise ValueError"""
        with pytest.raises(ValueError):
            parse_timestamp("yesterday")

    def test_format_none(self):
        """None formats to None"""
        assert format_timestamp(None) is None

    def test_offset_round_trip(self):
        """Non-UTC input is stored as UTC"""
        kst = timezone(timedelta(hours=9))
        value = datetime(2024, 1, 1, 9, 0, tzinfo=kst)

        assert format_timestamp(value) == "2024-01-01T00:00:00.000000Z"
