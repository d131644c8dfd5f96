"""
Report Generator Tests
Unit tests for parameter validation, half-open window filtering and ordering
"""
import pytest
from datetime import datetime, timezone, timedelta
from unittest.mock import MagicMock

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from cocktail_bot.errors import ValidationError
from cocktail_bot.report import (
    ReportKind,
    ReportParams,
    generate_report,
    parse_report_params,
    sort_report,
    summarize,
)
from cocktail_bot.users.models import User

T0 = datetime(2024, 6, 1, tzinfo=timezone.utc)


def make_user(email, added_hours, redeemed_hours=None):
    redeemed = T0 + timedelta(hours=redeemed_hours) if redeemed_hours is not None else None
    return User(id=email, email=email, date_added=T0 + timedelta(hours=added_hours), redeemed=redeemed)


class TestParseReportParams:
    """Test parse_report_params validation"""

    def test_valid_strings(self):
        """Kind and dates are parsed from strings"""
        params = parse_report_params("Redeemed", "2024-06-01", "2024-06-02")

        assert params.kind is ReportKind.REDEEMED
        assert params.date_from == T0
        assert params.date_to == T0 + timedelta(days=1)

    def test_unknown_kind(self):
        """Unknown kinds fail on the kind field"""
        with pytest.raises(ValidationError) as exc_info:
            parse_report_params("weekly", T0, T0 + timedelta(days=1))

        assert exc_info.value.field == "kind"

    def test_empty_window(self):
        """from == to is rejected"""
        with pytest.raises(ValidationError) as exc_info:
            parse_report_params("all", T0, T0)

        assert exc_info.value.field == "date_range"

    def test_inverted_window(self):
        """from > to is rejected"""
        with pytest.raises(ValidationError) as exc_info:
            parse_report_params("added", T0 + timedelta(days=1), T0)

        assert exc_info.value.field == "date_range"

    def test_unparseable_date(self):
        """Garbage dates fail on their own field"""
        with pytest.raises(ValidationError) as exc_info:
            parse_report_params("all", "not a date", T0)

        assert exc_info.value.field == "date_from"


class TestReportFiltering:
    """Test window inclusion and ordering"""

    def test_half_open_window(self):
        """Start is inclusive, end is exclusive"""
        params = ReportParams(ReportKind.ADDED, T0, T0 + timedelta(hours=2))

        assert params.includes(make_user("a@x.com", 0)) is True
        assert params.includes(make_user("b@x.com", 1)) is True
        assert params.includes(make_user("c@x.com", 2)) is False
        assert params.includes(make_user("d@x.com", -1)) is False

    def test_redeemed_kind_uses_redeemed_timestamp(self):
        """Unredeemed users never appear in redeemed reports"""
        params = ReportParams(ReportKind.REDEEMED, T0, T0 + timedelta(days=1))

        assert params.includes(make_user("a@x.com", 0)) is False
        assert params.includes(make_user("b@x.com", -48, redeemed_hours=3)) is True

    def test_sort_most_recent_first_ties_by_email(self):
        """Most recent first, equal timestamps by email ascending"""
        params = ReportParams(ReportKind.ALL, T0, T0 + timedelta(days=1))
        users = [
            make_user("b@x.com", 1),
            make_user("c@x.com", 5),
            make_user("a@x.com", 1),
        ]

        ordered = sort_report(params, users)

        assert [u.email for u in ordered] == ["c@x.com", "a@x.com", "b@x.com"]

    def test_summarize(self):
        """Counts split redeemed and eligible"""
        users = [make_user("a@x.com", 0), make_user("b@x.com", 0, redeemed_hours=1)]

        assert summarize(users) == {"total": 2, "redeemed": 1, "eligible": 1}


class TestGenerateReport:
    """Test generate_report delegation"""

    def test_validates_before_calling_repository(self):
        """Invalid parameters never reach the backend"""
        repository = MagicMock()

        with pytest.raises(ValidationError):
            generate_report(repository, "bogus", T0, T0 + timedelta(days=1))

        repository.get_report.assert_not_called()

    def test_passes_params_and_context(self):
        """Validated params and context are forwarded"""
        repository = MagicMock()
        repository.get_report.return_value = [make_user("a@x.com", 1)]
        ctx = object()

        result = generate_report(repository, "added", T0, T0 + timedelta(days=1), ctx)

        params, passed_ctx = repository.get_report.call_args[0]
        assert params.kind is ReportKind.ADDED
        assert passed_ctx is ctx
        assert [u.email for u in result] == ["a@x.com"]
