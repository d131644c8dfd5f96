"""
Email Import Tests
"""
import pytest

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from cocktail_bot.importer import import_emails, read_emails_from_csv
from cocktail_bot.storage.csv_backend import CSVRepository
from cocktail_bot.users.models import User


class TestImportEmails:
    """Test import_emails counting and deduplication"""

    def setup_method(self):
        self.repository = None

    def make_repository(self, tmp_path):
        self.repository = CSVRepository(str(tmp_path / "users.csv"))
        return self.repository

    def test_counts(self, tmp_path):
        """Valid, invalid, batch duplicates and existing users are counted separately"""
        repository = self.make_repository(tmp_path)
        repository.add_user(User.create_new("existing@example.com"))

        result = import_emails(repository, [
            "one@example.com",
            " ONE@example.com ",
            "two@example.com",
            "broken",
            "",
            "Existing@Example.com",
        ])

        assert result.added == 2
        assert result.duplicates == 1
        assert result.invalid == 1
        assert result.existing == 1
        assert result.invalid_emails == ["broken"]
        assert result.duplicate_emails == ["one@example.com"]
        assert repository.find_by_email("two@example.com").redeemed is None

    def test_counts_dict(self, tmp_path):
        """counts() exposes the numeric summary"""
        repository = self.make_repository(tmp_path)

        result = import_emails(repository, ["a@example.com"])

        assert result.counts() == {"added": 1, "invalid": 0, "duplicates": 0, "existing": 0}


class TestReadEmailsFromCSV:
    """Test read_emails_from_csv column selection"""

    def test_first_column_with_header(self, tmp_path):
        """Header row is skipped by default"""
        path = tmp_path / "emails.csv"
        path.write_text("email,name\na@example.com,A\n,blank\nb@example.com,B\n", encoding="utf-8")

        assert read_emails_from_csv(str(path)) == ["a@example.com", "b@example.com"]

    def test_other_column_without_header(self, tmp_path):
        """Column numbers are 1-based"""
        path = tmp_path / "emails.csv"
        path.write_text("Alice,alice@example.com\nBob\nCarol,carol@example.com\n", encoding="utf-8")

        emails = read_emails_from_csv(str(path), column=2, has_header=False)

        assert emails == ["alice@example.com", "carol@example.com"]

    def test_invalid_column(self, tmp_path):
        """Column 0 is rejected"""
        path = tmp_path / "emails.csv"
        path.write_text("a@example.com\n", encoding="utf-8")

        with pytest.raises(ValueError):
            read_emails_from_csv(str(path), column=0)
