import pytest

from social.graze.bookshelf.books import (
    BookStatus,
    InvalidBookStatus,
    parse_book_status,
    status_changes,
)


class TestBookStatus:
    @pytest.mark.parametrize(
        "value,expected",
        [
            ("buzz.bookhive.defs#reading", BookStatus.reading),
            ("reading", BookStatus.reading),
            ("wantToRead", BookStatus.want_to_read),
            (" finished ", BookStatus.finished),
        ],
    )
    def test_parse(self, value, expected):
        assert parse_book_status(value) == expected

    @pytest.mark.parametrize(
        "value",
        [None, "", "Reading", "buzz.bookhive.defs#unknown", "other#reading", 5, ["reading"], {}],
    )
    def test_parse_invalid(self, value):
        with pytest.raises(InvalidBookStatus) as exc_info:
            parse_book_status(value)
        assert exc_info.value.status == 400

    def test_labels(self):
        assert BookStatus.want_to_read.label == "Want to Read"
        assert all(status.label for status in BookStatus)

    def test_status_changes(self):
        assert status_changes(BookStatus.abandoned) == {
            "status": "buzz.bookhive.defs#abandoned"
        }
